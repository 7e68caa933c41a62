"""
FastAPI Main Application
Entry point for the API server
"""

from dotenv import load_dotenv
load_dotenv()

import asyncio

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime, timezone

from mira.config import load_settings
from mira.models.errors import UnexpectedReplyError
from .routes import get_orchestrator, router, start_cleanup_task
from .websocket import manager
from mira.utils.logger import get_logger

logger = get_logger("main")


async def _handle_frame(chat_id: str, data: dict):
    """Apply one client frame to the chat; returns the TurnResult or None for unknown frames."""
    orchestrator = get_orchestrator()
    frame_type = data.get("type")
    if frame_type == "message":
        return await orchestrator.handle_message(
            chat_id, data.get("user_id", "anonymous"), data.get("message", ""),
            data.get("personality", "tutor"),
        )
    if frame_type == "choose":
        return await orchestrator.choose_option(chat_id, data.get("name", ""), data.get("option_id"))
    if frame_type == "approve":
        return await orchestrator.approve(chat_id, bool(data.get("approved", False)))
    if frame_type == "input":
        return await orchestrator.submit_input(chat_id, data.get("value", ""))
    if frame_type == "cancel":
        return await orchestrator.cancel(chat_id)
    return None


async def _run_frame(websocket: WebSocket, chat_id: str, data: dict) -> None:
    """Apply one frame and report failures back on the socket."""
    try:
        result = await _handle_frame(chat_id, data)
        if result is None:
            await websocket.send_json({"type": "error", "data": {"detail": f"Unknown frame type {data.get('type')!r}"}})
    except KeyError:
        await websocket.send_json({"type": "error", "data": {"detail": "Chat not found"}})
    except UnexpectedReplyError as e:
        await websocket.send_json({"type": "error", "data": {"detail": str(e)}})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket frame failed", extra={"chat_id": chat_id, "action": "ws_error", "extra": str(e)})


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = load_settings()

    app = FastAPI(
        title="Mira Assistant API",
        description="Cybersecurity chat assistant with human-in-the-loop scan and report workflows",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        get_orchestrator()
        start_cleanup_task()
        logger.info("Mira API started", extra={"action": "startup", "extra": {"db_path": settings.db_path}})

    @app.on_event("shutdown")
    async def shutdown():
        await get_orchestrator().drain()

    @app.websocket("/ws/chat/{chat_id}")
    async def websocket_endpoint(websocket: WebSocket, chat_id: str):
        """WebSocket endpoint for chat events and dialogue replies"""
        await manager.connect(chat_id, websocket)
        frame_tasks: set[asyncio.Task] = set()

        try:
            await manager.send_message(chat_id, {
                "type": "connected",
                "data": {
                    "message": "WebSocket connection established",
                    "chat_id": chat_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            })

            while True:
                try:
                    data = await websocket.receive_json()
                except WebSocketDisconnect:
                    break

                if data.get("type") == "cancel":
                    # Read and applied while another frame is still running
                    await _run_frame(websocket, chat_id, data)
                    continue
                # Turns keep running after a disconnect so their results are persisted
                task = asyncio.create_task(_run_frame(websocket, chat_id, data))
                frame_tasks.add(task)
                task.add_done_callback(frame_tasks.discard)

        finally:
            manager.disconnect(chat_id, websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mira.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
