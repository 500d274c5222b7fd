"""FastAPI application — analysis requests, status, and live progress."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from analysis_hub.config import settings
from analysis_hub.errors import InvalidSubjectError, TransportError
from analysis_hub.services.application import Application
from analysis_hub.services.gateway import Gateway
from analysis_hub.services.relay import ProgressRelay, QueueObserver, WebSocketObserver
from analysis_hub.utils.logger import logger


# ── Models ──────────────────────────────────────────────────────────
class ConfigUpdateRequest(BaseModel):
    aggregation_timeout_ms: int | None = None
    result_cache_ttl_secs: int | None = None
    success_grace_secs: float | None = None
    error_grace_secs: float | None = None
    rate_limits: dict[str, tuple[int, int]] | None = None


def create_app(application: Application | None = None) -> FastAPI:
    """Build the FastAPI app around one ``Application``."""
    hub = application or Application()

    app = FastAPI(
        title="Analysis Hub",
        description="Fan-out/fan-in orchestration of stock analysis agents",
        version="0.1.0",
    )
    app.state.hub = hub

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _gateway() -> Gateway:
        if hub.gateway is None:
            raise HTTPException(status_code=503, detail=f"API disabled in {hub.start_mode} mode")
        return hub.gateway

    def _relay() -> ProgressRelay:
        if hub.relay is None:
            raise HTTPException(status_code=503, detail=f"API disabled in {hub.start_mode} mode")
        return hub.relay

    # ── Lifecycle ────────────────────────────────────────────────────
    @app.on_event("startup")
    async def _startup() -> None:
        await hub.start()
        logger.info("[Boot] Analysis hub ready (%s)", hub.start_mode)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await hub.stop()

    # ── Requests ─────────────────────────────────────────────────────
    @app.post("/analyze/{subject_key}", status_code=202)
    async def analyze(subject_key: str) -> dict:
        """Dispatch an analysis; returns before any worker has answered."""
        gateway = _gateway()
        logger.info("API: analyze %s", subject_key)
        try:
            return await gateway.submit(subject_key)
        except InvalidSubjectError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TransportError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    @app.get("/status/{correlation_id}")
    async def status(correlation_id: str) -> dict:
        found = _relay().status(correlation_id)
        if found is None:
            raise HTTPException(status_code=404, detail=f"Unknown request {correlation_id}")
        return found

    @app.get("/history/{subject_key}")
    async def history(subject_key: str) -> dict:
        """Most recent cached result for a symbol."""
        cached = _relay().cached_result(subject_key)
        if cached is None:
            raise HTTPException(
                status_code=404, detail=f"No recent analysis for {subject_key.upper()}",
            )
        return cached

    # ── Health ───────────────────────────────────────────────────────
    @app.get("/health")
    async def health() -> dict:
        return await hub.health()

    @app.get("/agents/status")
    async def agents_status() -> dict:
        return await hub.registry.health()

    # ── Config ───────────────────────────────────────────────────────
    @app.get("/config")
    async def get_config() -> dict:
        return hub.config.get_config()

    @app.put("/config")
    async def update_config(req: ConfigUpdateRequest) -> dict:
        """Persist overrides; timings apply to requests submitted afterwards."""
        updates = req.model_dump(exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No config values supplied")
        saved = hub.config.update_config(updates)
        if hub.aggregator is not None:
            hub.aggregator.timeout_secs = hub.config.AGGREGATION_TIMEOUT_SECS
        if hub.relay is not None:
            hub.relay.success_grace_secs = hub.config.SUCCESS_GRACE_SECS
            hub.relay.error_grace_secs = hub.config.ERROR_GRACE_SECS
            hub.relay.result_ttl_secs = hub.config.RESULT_CACHE_TTL_SECS
        logger.info("API: config updated %s", sorted(updates))
        return saved

    # ── Live progress ────────────────────────────────────────────────
    @app.websocket("/ws")
    async def ws(websocket: WebSocket) -> None:
        """Clients send {"action": "subscribe"|"unsubscribe", "correlationId": ...}."""
        await websocket.accept()
        await websocket.send_json({"type": "connected", "message": "Connected to analysis hub"})
        relay = hub.relay
        observer = WebSocketObserver(websocket)
        try:
            while True:
                try:
                    data: Any = await websocket.receive_json()
                except (json.JSONDecodeError, ValueError):
                    await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                    continue
                if not isinstance(data, dict):
                    await websocket.send_json({"type": "error", "error": "Expected an object"})
                    continue

                action = data.get("action")
                cid = str(data.get("correlationId") or "")
                if relay is None:
                    await websocket.send_json({"type": "error", "error": "Relay not running"})
                elif action == "subscribe" and cid:
                    if not relay.is_tracked(cid):
                        await websocket.send_json({
                            "type": "error",
                            "correlationId": cid,
                            "error": "Unknown or expired correlation id",
                        })
                        continue
                    await websocket.send_json({"type": "subscribed", "correlationId": cid})
                    await relay.subscribe(cid, observer)
                elif action == "unsubscribe" and cid:
                    relay.unsubscribe(cid, observer)
                    await websocket.send_json({"type": "unsubscribed", "correlationId": cid})
                else:
                    await websocket.send_json({"type": "error", "error": f"Unknown action {action!r}"})
        except WebSocketDisconnect:
            logger.debug("[WS] Client disconnected")
        finally:
            if relay is not None:
                relay.drop_observer(observer)

    @app.get("/stream/{correlation_id}")
    async def stream(correlation_id: str) -> StreamingResponse:
        """SSE endpoint — progress events until the terminal event."""
        relay = _relay()
        if not relay.is_tracked(correlation_id):
            raise HTTPException(status_code=404, detail=f"Unknown request {correlation_id}")

        observer = QueueObserver(asyncio.Queue())
        await relay.subscribe(correlation_id, observer)

        async def _event_generator():
            try:
                while True:
                    event = await observer.queue.get()
                    if event is None:
                        break
                    yield f"data: {json.dumps(event, default=str)}\n\n"
            finally:
                relay.unsubscribe(correlation_id, observer)

        return StreamingResponse(
            _event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(create_app(), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
