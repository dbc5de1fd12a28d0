import threading

import pytest
from io import BytesIO
from unittest.mock import MagicMock

import requests
from botocore.exceptions import ClientError, ConnectTimeoutError
from PIL import Image

from backend.common.errors import ImageDownloadError, StorageError, StorageNotConfigured
from backend.image_service import ingestion, storage
from backend.image_service.ingestion import MULTIPART_THRESHOLD


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "PutObject")


def _png_bytes(size=(1600, 1200), color=(200, 30, 30)):
    buffered = BytesIO()
    Image.new("RGB", size, color).save(buffered, format="PNG")
    return buffered.getvalue()


@pytest.mark.parametrize("size, expected", [
    (MULTIPART_THRESHOLD - 1, "simple"),
    (MULTIPART_THRESHOLD, "simple"),
    (MULTIPART_THRESHOLD + 1, "multipart"),
])
def test_route_upload_threshold(mocker, size, expected):
    single = mocker.patch("backend.image_service.ingestion.upload_image", return_value={"uploadMethod": "simple"})
    multi = mocker.patch("backend.image_service.ingestion.multipart_upload_image", return_value={"uploadMethod": "multipart"})

    result = ingestion.route_upload(b"\0" * size, "big.jpg")

    assert result["uploadMethod"] == expected
    assert single.called == (expected == "simple")
    assert multi.called == (expected == "multipart")


def test_reencode_shrinks_to_max_dimension():
    data, content_type, ext = ingestion.reencode_image(_png_bytes())
    assert content_type == "image/jpeg"
    assert ext == ".jpg"
    with Image.open(BytesIO(data)) as img:
        assert max(img.size) == ingestion.MAX_IMAGE_DIMENSION
        assert img.format == "JPEG"


def test_reencode_never_enlarges():
    data, _, _ = ingestion.reencode_image(_png_bytes(size=(120, 80)))
    with Image.open(BytesIO(data)) as img:
        assert img.size == (120, 80)


def test_reencode_corrupt_bytes_kept():
    data, content_type, ext = ingestion.reencode_image(b"not an image", "image/png", "photo.png")
    assert data == b"not an image"
    assert content_type == "image/png"
    assert ext == ".png"


def test_upload_image_corrupt_bytes_stored_unchanged(mock_storage):
    result = ingestion.upload_image(b"garbage-bytes", "photo.png", "poetry", "image/png")

    args, kwargs = mock_storage.put_single.call_args
    assert args[0] == b"garbage-bytes"
    assert args[1].startswith("poetry/") and args[1].endswith(".png")
    assert kwargs["content_type"] == "image/png"
    assert result["uploadMethod"] == "simple"
    assert result["url"] == "https://cdn.example.com/poetry/a.jpg"
    assert result["ossUrl"] == result["url"]
    assert result["size"] == len(b"garbage-bytes")


def test_multipart_upload_uses_part_settings(mock_storage):
    progress = []
    ingestion.multipart_upload_image(b"x" * 10, "big.jpg", progress_callback=progress.append)

    kwargs = mock_storage.put_multipart.call_args.kwargs
    assert kwargs["part_size"] == ingestion.PART_SIZE
    assert kwargs["concurrency"] == ingestion.MULTIPART_CONCURRENCY

    kwargs["callback"](10)
    assert progress == [{"percentage": 100, "bytes": 10}]


def test_upload_image_direct_skips_reencoding(mock_storage):
    png = _png_bytes(size=(10, 10))
    result = ingestion.upload_image_direct(png, "tiny.png")
    assert mock_storage.put_single.call_args.args[0] == png
    assert result["mimetype"] == "image/png"
    assert result["uploadMethod"] == "direct"


def test_upload_file(mock_storage):
    result = ingestion.upload_file(b"%PDF", "doc.pdf", "files", "application/pdf")
    key = mock_storage.put_single.call_args.args[1]
    assert key.startswith("files/") and key.endswith("_doc.pdf")
    assert result["mimetype"] == "application/pdf"


@pytest.mark.parametrize("exc, kind", [
    (_client_error("AccessDenied"), "access_denied"),
    (_client_error("NoSuchBucket"), "bucket_missing"),
    (_client_error("InvalidAccessKeyId"), "invalid_credentials"),
    (_client_error("SignatureDoesNotMatch"), "signature_mismatch"),
    (_client_error("RequestTimeout"), "timeout"),
    (ConnectTimeoutError(endpoint_url="https://oss.example.com"), "timeout"),
    (RuntimeError("boom"), "unknown"),
])
def test_classify_storage_error(exc, kind):
    assert ingestion.classify_storage_error(exc) == kind


def test_storage_error_has_user_message(mock_storage):
    mock_storage.put_single.side_effect = _client_error("NoSuchBucket")

    with pytest.raises(StorageError) as excinfo:
        ingestion.upload_image(b"data", "a.jpg")

    assert excinfo.value.kind == "bucket_missing"
    assert excinfo.value.message == ingestion.STORAGE_ERROR_MESSAGES["bucket_missing"]
    assert mock_storage.put_single.call_count == 1


def test_signature_mismatch_retries_once_with_new_client(mocker):
    first = MagicMock()
    first.put_single.side_effect = _client_error("SignatureDoesNotMatch")
    second = MagicMock()
    second.put_single.return_value = {"url": "https://cdn.example.com/poetry/c.jpg", "etag": "e"}
    mocker.patch("backend.image_service.storage.get_storage", side_effect=[first, second])
    reset = mocker.patch("backend.image_service.storage.reset_storage")

    result = ingestion.upload_image(b"data", "a.jpg")

    reset.assert_called_once()
    assert first.put_single.call_count == 1
    assert second.put_single.call_count == 1
    assert result["url"] == "https://cdn.example.com/poetry/c.jpg"


def test_signature_mismatch_second_failure_is_generic(mocker):
    client = MagicMock()
    client.put_single.side_effect = _client_error("SignatureDoesNotMatch")
    mocker.patch("backend.image_service.storage.get_storage", return_value=client)
    mocker.patch("backend.image_service.storage.reset_storage")

    with pytest.raises(StorageError) as excinfo:
        ingestion.upload_image(b"data", "a.jpg")

    assert excinfo.value.kind == "unknown"
    assert client.put_single.call_count == 2


def test_storage_not_configured(mocker):
    mocker.patch("backend.image_service.storage.missing_settings", return_value=["OSS_BUCKET_NAME"])
    with pytest.raises(StorageNotConfigured):
        ingestion.upload_image(b"data", "a.jpg")


def test_download_image_404(mocker):
    response = MagicMock(status_code=404)
    mocker.patch("backend.image_service.ingestion.requests.get", return_value=response)
    with pytest.raises(ImageDownloadError) as excinfo:
        ingestion.download_image("https://example.com/missing.jpg")
    assert excinfo.value.message == "图片URL不存在"


def test_download_image_timeout(mocker):
    mocker.patch("backend.image_service.ingestion.requests.get", side_effect=requests.Timeout("slow"))
    with pytest.raises(ImageDownloadError) as excinfo:
        ingestion.download_image("https://example.com/slow.jpg")
    assert "超时" in excinfo.value.message


def test_download_image_passes_timeout(mocker):
    response = MagicMock(status_code=200, content=b"img", headers={"Content-Type": "image/png; charset=binary"})
    get = mocker.patch("backend.image_service.ingestion.requests.get", return_value=response)

    data, content_type = ingestion.download_image("https://example.com/a.png")

    assert data == b"img"
    assert content_type == "image/png"
    assert get.call_args.kwargs["timeout"] == ingestion.DOWNLOAD_TIMEOUT


def test_upload_image_from_url_routes_download(mocker):
    mocker.patch("backend.image_service.ingestion.download_image", return_value=(b"img", "image/png"))
    route = mocker.patch("backend.image_service.ingestion.route_upload", return_value={"url": "u"})

    assert ingestion.upload_image_from_url("https://example.com/a.png", "gallery") == {"url": "u"}
    args = route.call_args.args
    assert args[0] == b"img"
    assert args[2] == "gallery"
    assert args[3] == "image/png"


def test_save_image_locally(tmp_path):
    result = ingestion.save_image_locally(_png_bytes(size=(50, 40)), "photo.png", upload_dir=str(tmp_path))

    saved = tmp_path / result["filename"]
    assert saved.exists()
    assert result["url"] == f"/uploads/{result['filename']}"
    assert result["mimetype"] == "image/jpeg"
    assert result["size"] == saved.stat().st_size


def test_encode_metadata_is_ascii():
    meta = storage.encode_metadata({"originalName": "春日.jpg", "skip": None})
    assert "skip" not in meta
    assert meta["originalName"].isascii()


def test_part_size_meets_s3_minimum():
    assert ingestion.PART_SIZE >= 5 * 1024 * 1024


def test_multipart_progress_from_worker_threads(mock_storage):
    progress = []
    ingestion.multipart_upload_image(b"x" * 800, "big.jpg", progress_callback=progress.append)
    callback = mock_storage.put_multipart.call_args.kwargs["callback"]

    def worker():
        for _ in range(100):
            callback(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(progress) == 800
    assert sorted(p["bytes"] for p in progress) == list(range(1, 801))
    assert max(p["percentage"] for p in progress) == 100


def test_save_image_locally_same_millisecond(mocker, tmp_path):
    mocker.patch("backend.image_service.ingestion.time.time", return_value=1700000000.0)

    first = ingestion.save_image_locally(b"first", "a.png", upload_dir=str(tmp_path))
    second = ingestion.save_image_locally(b"second", "a.png", upload_dir=str(tmp_path))

    assert first["filename"] != second["filename"]
    assert (tmp_path / first["filename"]).read_bytes() == b"first"
    assert (tmp_path / second["filename"]).read_bytes() == b"second"


def test_download_image_server_error(mocker):
    response = MagicMock(status_code=500)
    mocker.patch("backend.image_service.ingestion.requests.get", return_value=response)
    with pytest.raises(ImageDownloadError) as excinfo:
        ingestion.download_image("https://example.com/broken.jpg")
    assert excinfo.value.message == "下载图片失败: HTTP 500"
