"""
Vision-model client used to turn an image into a poem.

Two providers are supported, picked once at import time:
1. Doubao (Volcengine Ark) through its OpenAI-compatible endpoint.
2. Google Gemini, when no Doubao key is configured.

If neither is configured every call raises InferenceError and the
generation flow falls back to canned poems.
"""

import base64
import logging
import os
from typing import Optional, Union

import requests
from dotenv import load_dotenv

# --- OPENAI IMPORTS ---
import openai
from openai import OpenAI

# --- GEMINI IMPORTS ---
import google.genai as genai
from google.genai import errors as genai_errors
from google.genai import types

from backend.ai_service.parser import ParsedPoetry, parse_poetry_result
from backend.common.errors import InferenceError

load_dotenv()

# --- API KEY RETRIEVAL ---
DOUBAO_API_KEY = os.getenv("DOUBAO_API_KEY")
DOUBAO_BASE_URL = os.getenv("DOUBAO_BASE_URL", "https://ark.cn-beijing.volces.com/api/v3")
DOUBAO_MODEL = os.getenv("DOUBAO_MODEL", "doubao-1-5-thinking-vision-pro-250428")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

# Model tag stored on every generated record
MODEL_TAG = "doubao-pro"

REQUEST_TIMEOUT = 30
DEFAULT_TEMPERATURE = 0.8
DEFAULT_MAX_TOKENS = 1000

# --- CLIENT INITIALIZATION ---
openai_client = None
gemini_client = None
ACTIVE_AI_SERVICE = None

# --- PROMPTS ---
STYLES = ("古风", "现代", "浪漫", "哲理")
DEFAULT_STYLE = STYLES[0]

SYSTEM_PROMPT = (
    "你是一位才华横溢的诗人，擅长根据图片内容创作优美的诗歌。"
    "请仔细观察图片，然后创作一首符合指定风格的诗歌。同时给诗取个名字。"
)

STYLE_PROMPTS = {
    "古风": "请以古风诗词的形式，创作一首优美的诗歌。要求：1. 使用古风词汇和表达方式 2. 意境优美，富有诗意 3. 字数控制在50-100字之间 4. 可以包含标题",
    "现代": "请以现代诗的形式，创作一首富有现代感的诗歌。要求：1. 语言简洁明了 2. 情感真挚 3. 字数控制在100-200字之间 4. 可以包含标题",
    "浪漫": "请以浪漫主义风格，创作一首充满浪漫情怀的诗歌。要求：1. 情感丰富，富有想象力 2. 语言优美动人 3. 字数控制在80-150字之间 4. 可以包含标题",
    "哲理": "请以哲理诗的形式，创作一首富有哲理的诗歌。要求：1. 思想深刻 2. 语言凝练 3. 字数控制在60-120字之间 4. 可以包含标题",
}

IMAGE_POETRY_TEMPLATE = """请仔细观察这张图片，然后：

1. 首先简要描述图片内容（50字以内）
2. 然后根据图片内容，{style_prompt}

请按照以下格式返回：

**图片描述：**
[图片内容描述]

**诗歌：**
[诗歌标题]
[诗歌内容]

**分析：**
[对图片的简要分析，包括色彩、构图、意境等]"""


def init_clients() -> Optional[str]:
    """
    (Re)build the provider clients from configuration.

    Returns:
        str: The active provider ("doubao" or "gemini"), or None.
    """
    global openai_client, gemini_client, ACTIVE_AI_SERVICE
    openai_client = None
    gemini_client = None
    ACTIVE_AI_SERVICE = None

    # 1. Try Doubao first
    if DOUBAO_API_KEY:
        try:
            openai_client = OpenAI(api_key=DOUBAO_API_KEY, base_url=DOUBAO_BASE_URL, timeout=REQUEST_TIMEOUT)
            ACTIVE_AI_SERVICE = "doubao"
            logging.info("Initialized Doubao client.")
        except Exception as e:
            openai_client = None
            logging.warning(f"Doubao client initialization failed: {e}. Trying fallback.")

    # 2. If Doubao failed, try Gemini
    if ACTIVE_AI_SERVICE is None and GEMINI_API_KEY:
        try:
            gemini_client = genai.Client(api_key=GEMINI_API_KEY)
            ACTIVE_AI_SERVICE = "gemini"
            logging.info("Initialized Gemini client.")
        except Exception as e:
            gemini_client = None
            logging.warning(f"Gemini client initialization failed: {e}.")

    if ACTIVE_AI_SERVICE is None:
        logging.error("No vision model configured (set DOUBAO_API_KEY or GEMINI_API_KEY).")
    return ACTIVE_AI_SERVICE


init_clients()


def normalize_style(style: Optional[str]) -> str:
    """Map any input onto one of the four known styles."""
    return style if style in STYLES else DEFAULT_STYLE


def build_image_poetry_prompt(style: Optional[str]) -> str:
    """
    Build the user prompt for a given style.

    Unknown styles use the first style's requirements.
    """
    return IMAGE_POETRY_TEMPLATE.format(style_prompt=STYLE_PROMPTS[normalize_style(style)])


def to_image_ref(image_input: Union[bytes, str], mime_type: str = "image/jpeg") -> str:
    """
    Convert raw bytes into a base64 data URI; strings (URLs) pass through.

    Raises:
        InferenceError: For any other input type.
    """
    if isinstance(image_input, (bytes, bytearray)):
        encoded = base64.b64encode(bytes(image_input)).decode("utf-8")
        return f"data:{mime_type or 'image/jpeg'};base64,{encoded}"
    if isinstance(image_input, str) and image_input:
        return image_input
    raise InferenceError("图片输入格式不正确，请提供图片数据或URL")


def _gemini_image_part(image_ref: str) -> "types.Part":
    """Gemini needs inline bytes, so data URIs are decoded and URLs fetched."""
    if image_ref.startswith("data:"):
        header, _, payload = image_ref.partition(",")
        mime_type = header[5:].split(";")[0] or "image/jpeg"
        return types.Part.from_bytes(data=base64.b64decode(payload), mime_type=mime_type)

    response = requests.get(image_ref, timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    mime_type = response.headers.get("Content-Type", "image/jpeg").split(";")[0]
    return types.Part.from_bytes(data=response.content, mime_type=mime_type)


def _classify_inference_error(exc: Exception) -> str:
    """Map a provider failure onto a user-facing message."""
    if isinstance(exc, openai.APIError):
        # Ark reports image problems as InvalidParameter.<Code> in the error body
        text = str(exc)
        if "UnsupportedImageFormat" in text:
            return "图片格式不支持，请使用JPEG、PNG等常见格式"
        if "ImageTooLarge" in text:
            return "图片文件过大，请压缩后重试"
    if isinstance(exc, openai.AuthenticationError):
        return "API密钥无效，请检查配置"
    if isinstance(exc, openai.RateLimitError):
        return "API调用频率过高，请稍后重试"
    if isinstance(exc, genai_errors.APIError):
        if exc.code == 401:
            return "API密钥无效，请检查配置"
        if exc.code == 429:
            return "API调用频率过高，请稍后重试"
    return "诗歌生成失败，请稍后重试"


def complete(
    system_prompt: str,
    user_prompt: str,
    image_ref: str,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> str:
    """
    Send one image + prompt to the active provider and return the raw text.

    Raises:
        InferenceError: No provider, HTTP/timeout failure or an empty answer.
    """
    if ACTIVE_AI_SERVICE is None:
        raise InferenceError("AI service is not configured.")

    try:
        if ACTIVE_AI_SERVICE == "doubao":
            response = openai_client.chat.completions.create(
                model=DOUBAO_MODEL,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": user_prompt},
                            {"type": "image_url", "image_url": {"url": image_ref}},
                        ],
                    },
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                top_p=0.9,
            )
            content = response.choices[0].message.content
        else:
            response = gemini_client.models.generate_content(
                model=GEMINI_MODEL,
                contents=[_gemini_image_part(image_ref), user_prompt],
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=temperature,
                    max_output_tokens=max_tokens,
                ),
            )
            content = response.text
    except InferenceError:
        raise
    except Exception as e:
        logging.error(f"{ACTIVE_AI_SERVICE} API call failed: {e}")
        raise InferenceError(_classify_inference_error(e), details=str(e)) from e

    if not content or not content.strip():
        raise InferenceError("诗歌生成失败，请稍后重试", details="empty model response")
    return content.strip()


def generate_poetry_from_image(
    image_input: Union[bytes, str],
    style: Optional[str] = DEFAULT_STYLE,
    mime_type: str = "image/jpeg",
) -> ParsedPoetry:
    """
    Generate a poem for an image.

    Args:
        image_input: Raw image bytes or an image URL.
        style: One of STYLES; anything else uses the first style.
        mime_type: Content type used when the image is sent inline.

    Returns:
        ParsedPoetry: The parsed model answer.
    """
    image_ref = to_image_ref(image_input, mime_type)
    logging.info(
        f"Calling {ACTIVE_AI_SERVICE} for poetry: style={style}, "
        f"image_type={'buffer' if isinstance(image_input, (bytes, bytearray)) else 'url'}"
    )

    raw = complete(SYSTEM_PROMPT, build_image_poetry_prompt(style), image_ref)
    logging.info(f"Raw model output ({len(raw)} chars): {raw}")
    return parse_poetry_result(raw)


def check_connection() -> bool:
    """Cheap text-only round trip to see if the provider answers."""
    if ACTIVE_AI_SERVICE is None:
        return False
    try:
        if ACTIVE_AI_SERVICE == "doubao":
            openai_client.chat.completions.create(
                model=DOUBAO_MODEL,
                messages=[{"role": "user", "content": "你好"}],
                max_tokens=10,
            )
        else:
            gemini_client.models.generate_content(model=GEMINI_MODEL, contents="你好")
        return True
    except Exception as e:
        logging.error(f"Vision model connection check failed: {e}")
        return False
