import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class ChatCompletionRequest(BaseModel):
    # 服务商特有的字段 (top_p, tools, ...) 原样透传
    model_config = ConfigDict(extra="allow")

    # messages 只要求是数组, 每条消息的结构由上游判断
    messages: list
    # null 与缺省等价, 由分类器填入默认值
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = None


class UpstreamResult(BaseModel):
    status_code: int
    body: Any = None
    headers: Dict[str, str] = {}


class Delta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Delta = Delta()
    finish_reason: Optional[str] = None


class SSEChunk(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int = 0
    model: str
    choices: List[ChunkChoice]

    @classmethod
    def build(cls, completion_id: str, model: str, delta: Optional[dict] = None,
              finish_reason: Optional[str] = None) -> "SSEChunk":
        return cls(
            id=completion_id,
            created=int(time.time()),
            model=model,
            choices=[ChunkChoice(delta=Delta(**(delta or {})), finish_reason=finish_reason)],
        )

    def to_dict(self) -> dict:
        """delta 只保留设置了的字段, finish_reason 保留 null"""
        data = self.model_dump(exclude={"choices"})
        data["choices"] = [
            {
                "index": choice.index,
                "delta": choice.delta.model_dump(exclude_none=True),
                "finish_reason": choice.finish_reason,
            }
            for choice in self.choices
        ]
        return data
