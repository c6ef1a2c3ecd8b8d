"""Upstream request construction.

The upstream takes a single flattened prompt rather than a message list:
history is rendered as ``"<label>: <content>\\n"`` lines and the new turn
ends with an open assistant label so the model continues from there.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from core.config.schemas.upstream import UpstreamConfig
from core.relay.types import ChatMessage, Role

ROLE_LABELS = {
    Role.USER.value: "用户",
    Role.ASSISTANT.value: "助手",
}


@dataclass(frozen=True, slots=True)
class UpstreamRequest:
    model: str
    prompt: str
    max_tokens: int
    temperature: float
    incremental_output: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "input": {"prompt": self.prompt},
            "parameters": {
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "incremental_output": self.incremental_output,
            },
        }


def _role_value(role: Any) -> str:
    return role.value if isinstance(role, Role) else str(role)


def build_prompt(
    message: str, history: Optional[Iterable[ChatMessage]] = None
) -> str:
    parts: list[str] = []
    for msg in history or ():
        label = ROLE_LABELS.get(_role_value(msg.role))
        if label is None:
            continue
        parts.append(f"{label}: {msg.content}\n")
    user = ROLE_LABELS[Role.USER.value]
    assistant = ROLE_LABELS[Role.ASSISTANT.value]
    parts.append(f"{user}: {message}\n{assistant}: ")
    return "".join(parts)


def build_request(
    message: str,
    history: Optional[Iterable[ChatMessage]],
    config: UpstreamConfig,
) -> UpstreamRequest:
    return UpstreamRequest(
        model=config.model,
        prompt=build_prompt(message, history),
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )


def build_headers(config: UpstreamConfig) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }
    headers.update(config.extra_headers or {})
    return headers


__all__ = [
    "ROLE_LABELS",
    "UpstreamRequest",
    "build_prompt",
    "build_request",
    "build_headers",
]
