"""FastAPI application factory for the chat relay.

Routes: /api/chat/* (relay), /health, /metrics. A built UI directory, when
present, is served from "/".
"""
from __future__ import annotations

import os
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from core import metrics
from core.config import AggregatedConfig, get_config
from core.observability import configure_logging
from core.relay import SessionRegistry, StreamRelay
from core.relay.transport import Transport
from chatrelay.api.routes.chat import router as chat_router


def create_app(
    config: AggregatedConfig | None = None,
    relay: StreamRelay | None = None,
    transport: Transport | None = None,
) -> FastAPI:
    cfg = config or get_config()
    configure_logging(cfg.logging)
    if relay is None:
        relay = StreamRelay(
            cfg.upstream, registry=SessionRegistry(), transport=transport
        )

    app = FastAPI(
        title="Chat Relay API",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
    )
    app.state.relay = relay
    app.state.config = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.server.cors_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=False,
        max_age=cfg.server.cors_max_age_s,
    )

    @app.get("/health")
    def health():  # noqa: D401
        return {
            "status": "ok",
            "active_sessions": app.state.relay.registry.active_count(),
        }

    @app.get("/metrics")
    def metrics_snapshot():  # noqa: D401
        if not cfg.metrics.enabled:
            return {"enabled": False}
        return metrics.snapshot()

    app.include_router(chat_router)

    # Static UI (mounted last so API routes take precedence)
    static_dir = cfg.server.static_dir
    if static_dir and os.path.isdir(static_dir):
        app.mount(
            "/", StaticFiles(directory=static_dir, html=True), name="ui"
        )

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):  # noqa: D401
        start = time.time()
        labels = {"route": request.url.path, "method": request.method}
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.time() - start) * 1000.0
            metrics.inc("api_request_total", labels)
            metrics.observe("api_request_latency_ms", duration_ms, labels)
            if response is not None and response.status_code >= 400:
                metrics.inc(
                    "api_request_errors_total",
                    labels | {"status": response.status_code},
                )

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    import uvicorn

    server = get_config().server
    uvicorn.run(
        "chatrelay.api.app:app",
        host=server.host,
        port=server.port,
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
