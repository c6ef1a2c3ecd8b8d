"""Observability schemas (metrics + logging)."""
from __future__ import annotations

from pydantic import BaseModel, Field


class MetricsConfig(BaseModel):
    enabled: bool = True


class LoggingConfig(BaseModel):
    level: str = Field("info", pattern="^(debug|info|warn|error)$")
    format: str = Field("text", pattern="^(json|text)$")
