import asyncio
import json
import logging
from typing import Optional

logger = logging.getLogger("fakestream.heartbeat")

# SSE 注释行, 客户端解析器会直接忽略
COMMENT_FRAME = ": heartbeat\n\n"


def chunk_frame() -> str:
    """不带内容的 chat.completion.chunk 保活帧, 兼容会丢弃注释行的中间层"""
    keepalive = {
        "id": "chatcmpl-keepalive",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "keepalive",
        "choices": [{"index": 0, "delta": {}, "finish_reason": None}],
    }
    return f"data: {json.dumps(keepalive)}\n\n"


class Heartbeat:
    """
    等待上游期间周期性向客户端写入保活帧。

    由一个 EmulationSession 独占; stop() 幂等, stop 之后不会再有任何 tick。
    """

    def __init__(self, writer, interval: float, frame: str = COMMENT_FRAME,
                 send_immediately: bool = False):
        self.writer = writer
        self.interval = interval
        self.frame = frame
        self.send_immediately = send_immediately
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    def start(self) -> "Heartbeat":
        if self._task is not None or self._stopped:
            return self
        self._task = asyncio.create_task(self._run())
        logger.info(f"[KeepAlive] 心跳已启动, 间隔 {self.interval}s")
        return self

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(f"[KeepAlive] 心跳已停止, 共发送 {self.ticks} 次")

    async def _run(self):
        if self.send_immediately:
            await self._tick()
        while not self._stopped:
            await asyncio.sleep(self.interval)
            await self._tick()

    async def _tick(self):
        if self._stopped:
            return
        try:
            await self.writer.write(self.frame)
            self.ticks += 1
        except Exception as e:
            # 连接断开会通过流本身的取消路径处理, 这里只记录
            logger.warning(f"[KeepAlive] 发送心跳失败: {e}")
