"""HTTP control surface for the frontend."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

import asyncio
import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from capture_process import ProcessSupervisor
from config import Settings, load_settings
from errors import OrchestratorError
from stream_session import SessionController
from twitch import TwitchClient
from twitch_auth import TokenManager


log = logging.getLogger(__name__)

_CLEANUP_INTERVAL_SEC = 30.0


def build_controller(settings: Settings) -> SessionController:
    """Wire TokenManager -> TwitchClient -> SessionController <- ProcessSupervisor."""
    tokens = TokenManager(settings.client_id, settings.client_secret)
    supervisor = ProcessSupervisor(
        tool=settings.capture_tool,
        mode="play" if settings.capture_mode == "play" else "record",
        capture_dir=settings.capture_dir,
        quality=settings.capture_quality,
        grace_period=settings.grace_period,
    )
    return SessionController(
        TwitchClient(tokens),
        supervisor,
        terminal_retention=settings.terminal_retention,
    )


async def _cleanup_loop(controller: SessionController) -> None:
    while True:
        await asyncio.sleep(_CLEANUP_INTERVAL_SEC)
        try:
            controller.cleanup_expired_sessions()
        except Exception:
            log.exception("Session cleanup failed")


def create_app(
    controller: SessionController | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    controller = controller or build_controller(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = asyncio.create_task(_cleanup_loop(controller))
        log.info("Twitch capture server ready (mode=%s)", settings.capture_mode)
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            await asyncio.to_thread(controller.shutdown)
            await asyncio.to_thread(controller.twitch.tokens.revoke)

    app = FastAPI(title="Twitch capture server", lifespan=lifespan)
    app.state.controller = controller

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        if exc.status_code >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.name, "detail": str(exc), "channel": exc.channel},
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "sessions": len(controller.active_channels())}

    @app.get("/sessions")
    def list_sessions() -> list[dict[str, Any]]:
        return [s.to_dict() for s in controller.list()]

    @app.post("/sessions/{channel}", status_code=202)
    def start_session(channel: str) -> dict[str, Any]:
        return controller.start(channel).to_dict()

    @app.get("/sessions/{channel}")
    def session_status(channel: str) -> dict[str, Any]:
        return controller.status(channel).to_dict()

    @app.delete("/sessions/{channel}")
    def stop_session(channel: str) -> dict[str, Any]:
        return controller.stop(channel).to_dict()

    @app.get("/twitch/live")
    def live_channels(channel: list[str] = Query(default=[])) -> list[dict[str, Any]]:
        return [s.to_dict() for s in controller.twitch.get_live_channels(channel)]

    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
