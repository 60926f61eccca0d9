import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import InvalidRequest, ServerMisconfigured
from .models import ChatCompletionRequest

logger = logging.getLogger("fakestream.dispatcher")

DEFAULT_TEMPERATURE = 0.7


class Dispatch(BaseModel):
    """分类结果: stream 决定走模拟流式还是直接透传"""

    stream: bool
    body: dict
    credential: Optional[str] = None
    url: Optional[str] = None
    # 通用代理转发给上游的客户端请求头 (已去掉逐跳头)
    headers: Dict[str, str] = {}


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        return token or None
    return None


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "body"
    return f"{field}: {first['msg']}"


def classify(payload: Any, authorization: Optional[str], settings: Settings) -> Dispatch:
    """
    检查入站请求, 决定模拟流式还是透传, 并构造发往上游的请求体。

    Args:
        payload: 已解析的 JSON 请求体。
        authorization (str): 请求头中的 Authorization, 可为空。
        settings (Settings): 运行配置。

    Returns:
        Dispatch: stream 为客户端原始的 stream 标志, body 中 stream 一律为 False。

    Raises:
        InvalidRequest: messages 缺失或不是数组。
        ServerMisconfigured: 服务端未配置 OPENAI_API_KEY。
    """
    if not isinstance(payload, dict):
        raise InvalidRequest("request body must be a JSON object")
    if not isinstance(payload.get("messages"), list):
        raise InvalidRequest("messages is required and must be an array")
    try:
        request = ChatCompletionRequest.model_validate(payload)
    except ValidationError as e:
        # 只有 messages 由代理校验, 其他字段是否合法交给上游判断
        logger.debug(f"请求字段不符合常见格式, 原样转发: {_validation_message(e)}")
        request = ChatCompletionRequest.model_construct(**payload)

    if not settings.api_key:
        raise ServerMisconfigured("OPENAI_API_KEY environment variable is not set")
    # 请求自带的 Bearer 凭证优先于服务端默认凭证
    credential = bearer_token(authorization) or settings.api_key

    # 先读取客户端原始的 stream 标志, 再强制改写为 False
    wants_stream = request.stream is True
    # 以原始请求为准, messages 等字段逐字透传; null 与缺省等价
    body = dict(payload)
    if body.get("model") is None:
        body["model"] = settings.default_model
    if body.get("temperature") is None:
        body["temperature"] = DEFAULT_TEMPERATURE
    body["stream"] = False
    if body.get("max_tokens") is None:
        body.pop("max_tokens", None)

    logger.info(f"收到请求 ({'stream' if wants_stream else 'static'}), model={body['model']}, "
                f"messages={len(payload['messages'])}")
    return Dispatch(stream=wants_stream, body=body, credential=credential)


def resolve_target(address: Optional[str], extra_path: str = "") -> str:
    """将 ?address= 中的基础地址与路径后缀拼成目标 URL"""
    if not address:
        raise InvalidRequest("Missing target address parameter (`?address=...`)")
    parsed = urlparse(address)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidRequest("Invalid target address format provided in `?address=` parameter.")
    if not extra_path:
        return address
    return urljoin(address if address.endswith("/") else address + "/", extra_path.lstrip("/"))


def classify_universal(method: str, target_url: str, raw_body: bytes,
                       authorization: Optional[str],
                       headers: Optional[Dict[str, str]] = None) -> Dispatch:
    """
    通用代理的分类: 只有 POST 到 /chat/completions 且 JSON 中 stream 为 true 时才模拟流式。

    其他情况 (非 JSON, stream 缺失, 其他路径) 一律透传, body 为空 dict 表示原样转发。
    模拟流式时客户端请求头 (api-key, OpenAI-Organization 等) 一并转发给上游。
    """
    credential = bearer_token(authorization)
    forwarded = dict(headers or {})
    is_chat = method == "POST" and "/chat/completions" in target_url
    if not is_chat or not raw_body:
        return Dispatch(stream=False, body={}, credential=credential, url=target_url, headers=forwarded)

    try:
        parsed = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"[Handler] POST {target_url} 的请求体不是合法 JSON, 原样透传: {e}")
        return Dispatch(stream=False, body={}, credential=credential, url=target_url, headers=forwarded)

    if not isinstance(parsed, dict) or parsed.get("stream") is not True:
        logger.info(f"[Handler] {target_url} 未请求流式, 透传")
        return Dispatch(stream=False, body={}, credential=credential, url=target_url, headers=forwarded)

    logger.info(f"[Handler] {target_url} 请求了 stream=true, 改写为非流式请求")
    parsed["stream"] = False
    return Dispatch(stream=True, body=parsed, credential=credential, url=target_url, headers=forwarded)
