import asyncio
import json

from fakestream.models import UpstreamResult


class FakeUpstream:
    """替代 UpstreamClient, 记录调用并返回预设结果"""

    endpoint = "http://upstream.test/v1/chat/completions"

    def __init__(self, body=None, status_code=200, error=None, delay=0.0):
        self.body = body
        self.status_code = status_code
        self.error = error
        self.delay = delay
        self.calls = []
        self.forwarded = []
        self.closed = False

    async def acall(self, body, credential=None, url=None, headers=None):
        self.calls.append({"body": body, "credential": credential, "url": url, "headers": headers})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return UpstreamResult(status_code=self.status_code, body=self.body)

    async def aforward(self, method, url, headers, content=None):
        self.forwarded.append({"method": method, "url": url, "headers": headers, "content": content})
        return UpstreamResult(status_code=200, body=b"passthrough", headers={"content-type": "text/plain"})

    def close(self):
        self.closed = True


def completion(content="hello world foo", finish_reason="stop", model="m", **extra):
    body = {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content},
                     "finish_reason": finish_reason}],
        "model": model,
    }
    body.update(extra)
    return body


def parse_frames(frames):
    """把 SSE 帧解析为 payload 列表, 注释行 (心跳) 解析为 None"""
    parsed = []
    for frame in frames:
        assert frame.endswith("\n\n")
        if frame.startswith(":"):
            parsed.append(None)
            continue
        assert frame.startswith("data: ")
        data = frame[len("data: "):-2]
        parsed.append(data if data == "[DONE]" else json.loads(data))
    return parsed


def split_stream(text):
    return [part + "\n\n" for part in text.split("\n\n") if part]
