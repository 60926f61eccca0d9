import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):
    """运行配置, 启动时从环境变量读取一次"""

    api_key: Optional[str] = None
    source_api_url: str = "https://api.openai.com"
    host: str = "0.0.0.0"
    port: int = 8000

    upstream_timeout: float = Field(default=300.0, gt=0)
    upstream_max_workers: int = Field(default=256, gt=0)

    # 心跳
    heartbeat_interval: float = Field(default=3.0, gt=0)
    heartbeat_style: str = "comment"  # comment / chunk

    # 分块与节奏
    chunk_mode: str = "words"  # words / chars
    chunk_size: int = Field(default=10, gt=0)
    chunk_delay: float = Field(default=0.1, ge=0)
    chunk_jitter: float = Field(default=0.0, ge=0)

    default_model: str = "gpt-3.5-turbo"
    emit_role_chunk: bool = False

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @field_validator("source_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("heartbeat_style")
    @classmethod
    def check_heartbeat_style(cls, v: str) -> str:
        if v not in ("comment", "chunk"):
            raise ValueError("heartbeat_style 只能是 comment 或 chunk")
        return v

    @field_validator("chunk_mode")
    @classmethod
    def check_chunk_mode(cls, v: str) -> str:
        if v not in ("words", "chars"):
            raise ValueError("chunk_mode 只能是 words 或 chars")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @classmethod
    def from_env(cls) -> "Settings":
        """
        从环境变量构造配置。缺少 OPENAI_API_KEY 不会导致启动失败,
        而是在每个请求上返回 500 server_error。
        """
        env_map = {
            "api_key": "OPENAI_API_KEY",
            "source_api_url": "SOURCE_API_URL",
            "host": "HOST",
            "port": "PORT",
            "upstream_timeout": "UPSTREAM_TIMEOUT",
            "upstream_max_workers": "UPSTREAM_MAX_WORKERS",
            "heartbeat_interval": "HEARTBEAT_INTERVAL",
            "heartbeat_style": "HEARTBEAT_STYLE",
            "chunk_mode": "CHUNK_MODE",
            "chunk_size": "CHUNK_SIZE",
            "chunk_delay": "CHUNK_DELAY",
            "chunk_jitter": "CHUNK_JITTER",
            "default_model": "DEFAULT_MODEL",
            "emit_role_chunk": "EMIT_ROLE_CHUNK",
            "cors_origins": "CORS_ORIGINS",
            "log_level": "LOG_LEVEL",
        }
        values = {}
        for field, env_name in env_map.items():
            value = os.getenv(env_name)
            if value not in (None, ""):
                values[field] = value
        return cls(**values)
