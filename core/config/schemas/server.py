"""HTTP server schema: bind address, CORS and optional static UI."""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_max_age_s: int = 3600
    # Served at "/" when the directory exists
    static_dir: str = "static"
