"""Upstream (streaming text-generation endpoint) config schema."""
from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator

DEFAULT_MAX_IN_MEMORY_BYTES = 10 * 1024 * 1024  # 10 MiB per buffered frame
DEFAULT_TIMEOUT_S = 300.0  # absolute bound for one upstream call


class UpstreamConfig(BaseModel):
    url: str = (
        "https://dashscope.aliyuncs.com/api/v1/services/aigc/"
        "text-generation/generation"
    )
    api_key: str = ""
    model: str = "qwen-turbo"
    max_tokens: int = 2000
    temperature: float = 0.7
    max_in_memory_bytes: int = DEFAULT_MAX_IN_MEMORY_BYTES
    timeout_s: float = DEFAULT_TIMEOUT_S
    extra_headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_key", mode="before")
    @classmethod
    def _key_as_str(cls, v: Any) -> str:  # noqa: D401
        # env overrides cast numeric-looking values; credentials stay text
        return "" if v is None else str(v)

    @field_validator("temperature")
    @classmethod
    def _temp_range(cls, v: float) -> float:  # noqa: D401
        if not (0 <= v <= 2):
            raise ValueError("temperature out of range 0..2")
        return v
