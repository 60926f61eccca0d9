import asyncio
import json
import logging
import random
import uuid
from enum import Enum
from typing import Any, Callable, List, Optional

from .chunker import chunk_text
from .config import Settings
from .dispatcher import Dispatch
from .errors import EmulationInternalError, UpstreamError
from .heartbeat import COMMENT_FRAME, Heartbeat, chunk_frame
from .models import SSEChunk, UpstreamResult

logger = logging.getLogger("fakestream.emulator")

DONE_FRAME = "data: [DONE]\n\n"


def format_sse(data: Any) -> str:
    """生成 SSE 数据帧, 字符串原样输出, 其他内容序列化为 JSON"""
    if isinstance(data, str):
        return f"data: {data}\n\n"
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


class SessionState(str, Enum):
    INIT = "init"
    AWAITING_UPSTREAM = "awaiting_upstream"
    STREAMING_CHUNKS = "streaming_chunks"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ABORTED = "aborted"


class StreamClosed(Exception):
    pass


_CLOSE = object()


class QueueWriter:
    """
    面向客户端的流写入端。

    模拟器与心跳向队列写帧, StreamingResponse 通过 frames() 读取;
    close() 只生效一次, 之后的 write 抛出 StreamClosed。
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def write(self, frame: str):
        if self.closed:
            raise StreamClosed("client stream already closed")
        self._queue.put_nowait(frame)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSE)

    async def frames(self):
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            yield frame


def extract_content(body: Any) -> str:
    """
    从上游响应中提取完整回复内容, 依次尝试:
    choices[0].message.content -> choices[0].text -> 纯字符串响应 -> 整个 body 的 JSON。
    """
    if isinstance(body, dict):
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            message = choice.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            # 旧版 completions 格式
            if isinstance(choice.get("text"), str):
                return choice["text"]
    if isinstance(body, str):
        return body
    preview = json.dumps(body, ensure_ascii=False)
    logger.warning(f"[Fake Stream] 无法提取标准内容, 可能是上游响应结构不匹配, 改为发送原始 JSON: {preview[:200]}")
    return preview


def extract_finish_reason(body: Any) -> str:
    if isinstance(body, dict):
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            reason = choices[0].get("finish_reason")
            if isinstance(reason, str) and reason:
                return reason
    return "stop"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


class EmulationSession:
    """一次客户端流式连接的全部状态, 由单个模拟器调用独占"""

    def __init__(self, writer: QueueWriter, cancel: asyncio.Event, heartbeat: Heartbeat):
        self.writer = writer
        self.cancel = cancel
        self.heartbeat = heartbeat
        self.completion_id = new_completion_id()
        self.state = SessionState.INIT
        self.frames_sent = 0
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set() or self.writer.closed

    async def send(self, frame: str) -> bool:
        """写入前检查取消标志; 客户端已断开时返回 False 而不是报错"""
        if self.cancelled:
            self.state = SessionState.ABORTED
            return False
        try:
            await self.writer.write(frame)
        except StreamClosed:
            self.state = SessionState.ABORTED
            return False
        self.frames_sent += 1
        return True

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self.state is SessionState.FINALIZING:
            self.state = SessionState.CLOSED
        else:
            self.state = SessionState.ABORTED
        self.writer.close()
        logger.info(f"[Fake Stream] 会话 {self.completion_id} 结束 ({self.state.value}), "
                    f"共发送 {self.frames_sent} 帧")


class FakeStreamEmulator:
    """
    假流式的核心: 启动心跳, 以非流式方式等待上游, 停止心跳,
    然后把完整回复切块并按一定节奏写成 chat.completion.chunk 流。
    """

    def __init__(self, upstream, settings: Settings,
                 chunker: Callable[..., List[str]] = chunk_text):
        self.upstream = upstream
        self.settings = settings
        self.chunker = chunker

    def open_session(self, writer: QueueWriter, cancel: Optional[asyncio.Event] = None) -> EmulationSession:
        if self.settings.heartbeat_style == "chunk":
            heartbeat = Heartbeat(writer, self.settings.heartbeat_interval, chunk_frame(),
                                  send_immediately=True)
        else:
            heartbeat = Heartbeat(writer, self.settings.heartbeat_interval, COMMENT_FRAME)
        return EmulationSession(writer, cancel or asyncio.Event(), heartbeat)

    async def run(self, dispatch: Dispatch, writer: QueueWriter,
                  cancel: Optional[asyncio.Event] = None) -> EmulationSession:
        session = self.open_session(writer, cancel)
        await self.emulate(session, dispatch)
        return session

    async def emulate(self, session: EmulationSession, dispatch: Dispatch):
        target = dispatch.url or getattr(self.upstream, "endpoint", "upstream")
        logger.info(f"[Fake Stream] 开始模拟流式 {session.completion_id} -> {target}")
        try:
            session.state = SessionState.AWAITING_UPSTREAM
            session.heartbeat.start()
            try:
                result = await self.upstream.acall(dispatch.body, dispatch.credential, dispatch.url,
                                                  dispatch.headers)
            finally:
                # 心跳必须在写入任何内容块之前完全停止
                session.heartbeat.stop()

            session.state = SessionState.STREAMING_CHUNKS
            await self._stream_chunks(session, result, dispatch)
        except UpstreamError as e:
            logger.error(f"[Fake Stream] 上游错误 ({e.status_code}): {e.message}")
            await self._send_error(session, {
                "error": {
                    "message": e.message,
                    "type": "upstream_error",
                    "code": e.status_code,
                    "upstream": e.body,
                }
            })
        except asyncio.CancelledError:
            logger.info(f"[Fake Stream] 客户端已断开, 停止 {session.completion_id}")
            session.state = SessionState.ABORTED
            raise
        except Exception as e:
            logger.exception(f"[Fake Stream] 处理上游响应时出错: {e}")
            error = EmulationInternalError(f"Internal proxy error: {e}")
            await self._send_error(session, error.to_payload())
        finally:
            session.close()

    async def _stream_chunks(self, session: EmulationSession, result: UpstreamResult, dispatch: Dispatch):
        body = result.body
        content = extract_content(body)
        chunks = self.chunker(content, self.settings.chunk_size, self.settings.chunk_mode)

        if isinstance(body, dict) and isinstance(body.get("id"), str) and body["id"]:
            session.completion_id = body["id"]
        model = (body.get("model") if isinstance(body, dict) else None) \
            or dispatch.body.get("model") or self.settings.default_model
        finish_reason = extract_finish_reason(body)

        logger.info(f"[Fake Stream] 回复长度 {len(content)}, 切分为 {len(chunks)} 块")

        if self.settings.emit_role_chunk:
            role_chunk = SSEChunk.build(session.completion_id, model, {"role": "assistant"})
            if not await session.send(format_sse(role_chunk.to_dict())):
                return

        for i, chunk in enumerate(chunks):
            sse_chunk = SSEChunk.build(session.completion_id, model, {"content": chunk})
            if not await session.send(format_sse(sse_chunk.to_dict())):
                logger.info(f"[Fake Stream] 客户端已断开, 在第 {i + 1}/{len(chunks)} 块停止")
                return
            if i < len(chunks) - 1:
                await asyncio.sleep(self._delay())

        session.state = SessionState.FINALIZING
        final_chunk = SSEChunk.build(session.completion_id, model, finish_reason=finish_reason)
        if await session.send(format_sse(final_chunk.to_dict())):
            await session.send(DONE_FRAME)

    def _delay(self) -> float:
        delay = self.settings.chunk_delay
        if self.settings.chunk_jitter:
            delay += random.uniform(0, self.settings.chunk_jitter)
        return delay

    async def _send_error(self, session: EmulationSession, payload: dict):
        """流已开始后的错误只能以数据帧形式发送, 随后发送 [DONE]"""
        if await session.send(format_sse(payload)):
            await session.send(DONE_FRAME)
        session.state = SessionState.ABORTED
