"""
Poem generation flow for POST /api/poetry/generate.

    upload (only for uploaded files) -> inference -> parse -> persist -> respond

Only a missing image is a hard failure. Storage, inference and persistence
failures are logged and degraded:
- upload failed      -> the raw bytes are sent inline to the model
- inference failed   -> a canned poem for the requested style
- persistence failed -> the poem is returned with a temporary id and a note
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from backend.ai_service import inference
from backend.ai_service.parser import ParsedPoetry
from backend.common.errors import ValidationError
from backend.image_service import ingestion
from backend.poetry_service import models

UPLOAD_FOLDER = "poetry"
NOT_PERSISTED_NOTE = "数据未保存到数据库，请稍后重试"

MOCK_DESCRIPTION = "这是一张美丽的图片，展现了丰富的视觉内容和深层的意境。"
MOCK_ANALYSIS = "图片分析：色彩丰富，构图和谐，具有很强的艺术感染力。"

MOCK_POETRIES = {
    "古风": {
        "title": "春日即景",
        "content": ["山水如画意境深", "清风徐来花满林", "诗情画意共此时", "万物可作诗一首"],
    },
    "现代": {
        "title": "光影瞬间",
        "content": ["光影交织的瞬间", "捕捉时光的足迹", "每一帧都是诗", "生活处处有惊喜"],
    },
    "浪漫": {
        "title": "岁月静好",
        "content": ["花开花落情依旧", "岁月静好你依然", "温柔如水话相思", "爱在心中永不变"],
    },
    "哲理": {
        "title": "人生感悟",
        "content": ["万象更新见真知", "人生如梦亦如诗", "时光荏苒悟人生", "智慧之光照前路"],
    },
}


@dataclass
class GenerationRequest:
    """Everything the flow needs from one validated HTTP request."""

    style: Optional[str] = None
    user_id: Optional[str] = None
    file_bytes: Optional[bytes] = None
    file_name: Optional[str] = None
    file_mimetype: Optional[str] = None
    image_url: Optional[str] = None
    image_bytes: Optional[bytes] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def has_image(self) -> bool:
        return bool(self.file_bytes or self.image_url or self.image_bytes)


def mock_poetry(style: Optional[str]) -> ParsedPoetry:
    """Canned poem for a style; unknown styles get the first style's poem."""
    mock = MOCK_POETRIES[inference.normalize_style(style)]
    return ParsedPoetry(
        description=MOCK_DESCRIPTION,
        poetry=list(mock["content"]),
        title=mock["title"],
        analysis=MOCK_ANALYSIS,
    )


def _store_upload(req: GenerationRequest) -> Optional[Dict[str, Any]]:
    """Push an uploaded file to object storage; None if that fails."""
    logging.info(
        f"Uploading image to storage: name={req.file_name}, size={len(req.file_bytes)}, "
        f"mimetype={req.file_mimetype}"
    )
    try:
        stored = ingestion.route_upload(req.file_bytes, req.file_name or "image.jpg", UPLOAD_FOLDER, req.file_mimetype)
        logging.info(f"Image stored at {stored['url']}")
        return stored
    except Exception as e:
        logging.error(f"Image upload failed: {e}")
        logging.warning("Falling back to inline base64 image for inference")
        return None


def _infer(req: GenerationRequest, image_url: Optional[str], style: str) -> ParsedPoetry:
    """Run inference on the best available image source, canned poem on failure."""
    try:
        if image_url:
            return inference.generate_poetry_from_image(image_url, style)
        if req.file_bytes:
            return inference.generate_poetry_from_image(req.file_bytes, style, req.file_mimetype or "image/jpeg")
        if req.image_bytes:
            return inference.generate_poetry_from_image(req.image_bytes, style)
        raise ValidationError("没有可用的图片数据")
    except Exception as e:
        logging.warning(f"Vision model call failed, using canned poem: {e}")
        return mock_poetry(style)


def _image_info(req: GenerationRequest, stored: Optional[Dict[str, Any]], image_url: Optional[str]) -> Dict[str, Any]:
    now_ms = int(time.time() * 1000)
    if image_url:
        filename = image_url.rstrip("/").split("/")[-1]
    else:
        filename = req.file_name or f"poetry_{now_ms}.jpg"

    if req.file_bytes:
        size = len(req.file_bytes)
    elif req.image_bytes:
        size = len(req.image_bytes)
    else:
        size = 0

    return {
        "filename": filename,
        "originalName": req.file_name,
        "path": image_url or f"/uploads/poetry_{now_ms}.jpg",
        "size": size,
        "mimetype": req.file_mimetype or "image/jpeg",
        "url": image_url,
        "storageUrl": stored["url"] if stored else None,
    }


def generate_poetry(req: GenerationRequest) -> Dict[str, Any]:
    """
    Run the whole generation flow for one request.

    Args:
        req (GenerationRequest): Validated request data.

    Returns:
        dict: The 201 response body (with a `note` when not persisted).

    Raises:
        ValidationError: If no image source was supplied.
    """
    if not req.has_image():
        raise ValidationError("请提供图片文件、图片数据或图片URL")

    start = time.time()
    style = inference.normalize_style(req.style)

    image_url = req.image_url
    stored = None
    if req.file_bytes:
        stored = _store_upload(req)
        image_url = stored["url"] if stored else None

    result = _infer(req, image_url, style)
    processing_time = int((time.time() - start) * 1000)

    recognition = {"description": result.description, "labels": [], "objects": []}
    poem = {
        "content": result.poetry,
        "title": result.title,
        "style": style,
        "length": len(result.poetry),
    }

    record = {
        "userId": req.user_id,
        "image": _image_info(req, stored, image_url or req.image_url),
        "imageRecognition": dict(recognition, service="doubao-vision"),
        "poetry": poem,
        "generation": {
            "prompt": inference.build_image_poetry_prompt(style),
            "model": inference.MODEL_TAG,
            "processingTime": processing_time,
        },
        "metadata": {"ip": req.ip, "userAgent": req.user_agent},
    }

    body: Dict[str, Any] = {
        "success": True,
        "data": {
            "poetry": dict(poem),
            "imageRecognition": recognition,
            "generation": {"processingTime": processing_time, "model": inference.MODEL_TAG},
        },
    }

    try:
        row = models.create_poetry(record)
        body["data"]["poetry"]["id"] = str(row["id"])
        logging.info(
            f"Poem generated: id={row['id']}, style={style}, title={result.title}, "
            f"processing_time={processing_time}ms"
        )
    except Exception as e:
        logging.error(f"Failed to persist poem: {e}")
        logging.warning("Returning generated poem without persisting it")
        body["data"]["poetry"]["id"] = f"temp_{int(time.time() * 1000)}"
        body["data"]["note"] = NOT_PERSISTED_NOTE

    return body
