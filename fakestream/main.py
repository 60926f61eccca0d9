import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from . import __version__
from .config import Settings
from .dispatcher import Dispatch, classify, classify_universal, resolve_target
from .emulator import FakeStreamEmulator, QueueWriter
from .errors import InvalidRequest, ProxyError, UpstreamError
from .upstream import UpstreamClient

logger = logging.getLogger("fakestream")

CHAT_PATHS = ("/v1/chat/completions", "/api/chat")
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # 让 Nginx 等代理不要缓冲
}
# 逐跳头, 透传时去掉
HOP_BY_HOP = {"host", "content-length", "connection", "transfer-encoding", "content-encoding"}


def _filter_headers(headers) -> dict:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP}


async def _read_json(request: Request):
    raw = await request.body()
    try:
        return json.loads(raw)
    except ValueError:
        raise InvalidRequest("request body must be valid JSON")


def _log_task_result(task: asyncio.Task):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[Fake Stream] 模拟任务异常退出: {error!r}")


def stream_response(emulator: FakeStreamEmulator, dispatch: Dispatch) -> StreamingResponse:
    """
    返回模拟流式的 StreamingResponse。

    响应头先发送出去, 之后才开始请求上游; 客户端断开时生成器被取消,
    finally 中设置取消标志并取消模拟任务, 由模拟任务自己停止心跳并关闭写入端。
    """

    async def event_stream():
        writer = QueueWriter()
        cancel = asyncio.Event()
        task = asyncio.create_task(emulator.run(dispatch, writer, cancel))

        def on_done(t: asyncio.Task):
            # 任务无论如何结束, 读取端都不能一直挂起
            writer.close()
            _log_task_result(t)

        task.add_done_callback(on_done)
        try:
            async for frame in writer.frames():
                yield frame
        finally:
            cancel.set()
            writer.close()
            if not task.done():
                logger.info("[Fake Stream] 客户端已断开, 取消模拟任务")
                task.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=STREAM_HEADERS)


def passthrough_response(result) -> Response:
    """上游 JSON 与状态码原样返回; 非 JSON 的 2xx 响应按原始文本返回"""
    if isinstance(result.body, (dict, list)):
        return JSONResponse(content=result.body, status_code=result.status_code)
    media_type = result.headers.get("content-type") or result.headers.get("Content-Type")
    return Response(content=result.body or b"", status_code=result.status_code, media_type=media_type)


def create_app(settings: Optional[Settings] = None, upstream: Optional[UpstreamClient] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    upstream = upstream or UpstreamClient(settings.source_api_url, settings.upstream_timeout,
                                         max_workers=settings.upstream_max_workers)
    emulator = FakeStreamEmulator(upstream, settings)

    app = FastAPI(title="Fake Stream Proxy", version=__version__)
    app.state.settings = settings
    app.state.upstream = upstream
    app.state.emulator = emulator

    # 允许所有来源的跨域请求（生产环境中应通过 CORS_ORIGINS 指定）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        if isinstance(exc, UpstreamError) and not isinstance(exc.body, (dict, list)):
            return Response(content=exc.body or b"", status_code=exc.status_code)
        return JSONResponse(content=exc.to_payload(), status_code=exc.status_code)

    async def chat_completions(request: Request):
        payload = await _read_json(request)
        dispatch = classify(payload, request.headers.get("authorization"), settings)

        if dispatch.stream:
            logger.info("进入模拟流式模式")
            return stream_response(emulator, dispatch)

        # 客户端不需要流式, 直接返回上游结果
        result = await upstream.acall(dispatch.body, dispatch.credential)
        return passthrough_response(result)

    async def chat_preflight():
        return Response(status_code=200)

    async def method_not_allowed():
        return JSONResponse(content={"error": "Method not allowed"}, status_code=405)

    for path in CHAT_PATHS:
        app.add_api_route(path, chat_completions, methods=["POST"])
        app.add_api_route(path, chat_preflight, methods=["OPTIONS"])
        app.add_api_route(path, method_not_allowed, methods=["GET", "PUT", "PATCH", "DELETE", "HEAD"])

    @app.get("/api/status")
    async def status():
        return {
            "status": "ok",
            "message": "假流式代理服务正常运行",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "features": {"streaming": True, "non_streaming": True, "cors": True},
            "endpoints": {"chat": "/v1/chat/completions", "status": "/api/status", "proxy": "/proxy/{path}"},
            "environment": {
                "has_api_key": bool(settings.api_key),
                "source_api_url": settings.source_api_url,
            },
        }

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Fake Stream Proxy is running."

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.api_route("/proxy/{extra_path:path}",
                   methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    async def universal_proxy(extra_path: str, request: Request, address: Optional[str] = None):
        """?address= 指定上游基础地址, 流式的 chat completion 请求会被模拟, 其余原样转发"""
        target = resolve_target(address, extra_path)
        raw_body = await request.body()
        dispatch = classify_universal(request.method, target, raw_body, request.headers.get("authorization"),
                                      _filter_headers(request.headers))
        if dispatch.stream:
            return stream_response(emulator, dispatch)

        result = await upstream.aforward(
            request.method, target, _filter_headers(request.headers), raw_body or None
        )
        return Response(
            content=result.body,
            status_code=result.status_code,
            headers=_filter_headers(result.headers),
        )

    @app.on_event("shutdown")
    async def shutdown():
        upstream.close()

    return app


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fakestream.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=True,
        env_file=".env",
    )
