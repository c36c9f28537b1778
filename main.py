"""FastAPI application for the clinic ticket queue.

Clients take a ticket of a category at the kiosk, service windows call
tickets by code, and consultation staff work through each call's exam
checklist.  All queue state lives in one :class:`QueueCoordinator`;
this module only maps HTTP requests onto its operations and wires up
the side channels: WebSocket/SSE displays, the optional Redis mirror,
the label printer and snapshot persistence.

Configuration comes from environment variables (see ``config.py``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, BackgroundTasks, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import Settings, load_settings
from errors import QueueError
from notifier import Broadcaster, ConnectionManager, RedisPublisher, StreamObserver, WebSocketObserver
from printer import LabelPrinter
from schemas import (
    CallRequest,
    FinalizeRequest,
    InProgressRequest,
    RequirementRequest,
    RequirementsRequest,
    TicketRequest,
)
from services import QueueCoordinator
from storage import SnapshotStore
from tasks import persist_loop, persist_state, sweep_loop

logger = logging.getLogger(__name__)

SSE_HEARTBEAT_SECONDS = 15.0

router = APIRouter()


def _coordinator(request: Request) -> QueueCoordinator:
    return request.app.state.coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load saved state, start the fan-out and background jobs."""
    settings: Settings = app.state.settings
    coordinator: QueueCoordinator = app.state.coordinator
    manager: ConnectionManager = app.state.manager
    store: SnapshotStore = app.state.store

    logger.info("🚀 Starting Clinic Queue application...")
    try:
        await asyncio.to_thread(store.init)
        saved = await asyncio.to_thread(store.load)
    except Exception:
        logger.exception("Could not load saved queue state, starting empty")
        saved = None
    if saved is not None:
        coordinator.restore(saved)

    await manager.start()

    redis_publisher = None
    if settings.redis_url:
        redis_publisher = RedisPublisher.from_url(settings.redis_url, settings.redis_channel)
        if redis_publisher is not None:
            app.state.broadcaster.sinks.append(redis_publisher)
            logger.info("⚡ Mirroring events to Redis channel %s", settings.redis_channel)
    app.state.redis = redis_publisher

    jobs = [
        asyncio.create_task(sweep_loop(coordinator, settings.sweep_interval_seconds)),
        asyncio.create_task(persist_loop(coordinator, store, settings.persist_interval_seconds)),
    ]
    logger.info("✅ Clinic Queue started with categories %s", ", ".join(c.tag for c in settings.categories))

    try:
        yield
    finally:
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        await persist_state(coordinator, store)
        await manager.stop()
        if redis_publisher is not None:
            app.state.broadcaster.sinks.remove(redis_publisher)
            redis_publisher.close()
        store.close()
        logger.info("Clinic Queue stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    manager = ConnectionManager()
    broadcaster = Broadcaster(manager)

    app = FastAPI(
        title="Clinic Ticket Queue",
        description="Ticket queue, window calls and exam tracking for a clinic",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager
    app.state.broadcaster = broadcaster
    app.state.coordinator = QueueCoordinator.from_settings(settings, notifier=broadcaster)
    app.state.store = SnapshotStore(settings.database_url)
    app.state.printer = LabelPrinter(settings.printer_host, settings.printer_port, settings.printer_timeout)
    app.state.redis = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_payload", "detail": jsonable_encoder(exc.errors())},
        )

    app.include_router(router)
    return app


@router.get("/")
def root(request: Request) -> Dict[str, Any]:
    """Root endpoint with service info."""
    settings: Settings = request.app.state.settings
    return {
        "service": "Clinic Ticket Queue",
        "status": "running",
        "version": request.app.version,
        "categories": [c.model_dump() for c in settings.categories],
        "endpoints": {
            "state": "/state",
            "websocket": "/ws",
            "events": "/events",
        },
    }


@router.get("/health")
def health_check(request: Request) -> Dict[str, Any]:
    try:
        request.app.state.store.ping()
        database = "connected"
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        database = "unavailable"
    return {
        "status": "healthy",
        "database": database,
        "redis": "connected" if request.app.state.redis else "unavailable",
        "observers": request.app.state.manager.get_total_connections(),
    }


@router.post("/tickets")
def generate_ticket(body: TicketRequest, request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    """Issue a ticket and send its label to the printer in the background."""
    ticket = _coordinator(request).generate(body.category)
    category = request.app.state.settings.category(ticket["category"])
    background_tasks.add_task(request.app.state.printer.print_ticket, ticket["code"], category.name)
    return ticket


@router.post("/calls")
def call_ticket(body: CallRequest, request: Request) -> Dict[str, Any]:
    return _coordinator(request).call_ticket(body.window, body.code, body.category)


@router.post("/calls/finalize")
def finalize_call(body: FinalizeRequest, request: Request) -> Dict[str, Any]:
    return _coordinator(request).finalize(call_id=body.id, code=body.code)


@router.post("/calls/requirements")
def assign_requirements(body: RequirementsRequest, request: Request) -> Dict[str, Any]:
    """Route a call to consultation with its exam list, or edit the list."""
    return _coordinator(request).assign_requirements(
        body.requirements,
        call_id=body.id,
        code=body.code,
        window=body.window,
        edit=body.edit,
    )


@router.get("/calls/pending-by-window")
def pending_by_window(request: Request) -> Dict[int, str]:
    return _coordinator(request).pending_by_window()


@router.get("/calls/consultation")
def consultation_calls(request: Request, only_pending: bool = False) -> List[Dict[str, Any]]:
    return _coordinator(request).consultation_calls(only_pending=only_pending)


@router.post("/calls/{call_id}/in-progress")
def set_in_progress(call_id: str, body: InProgressRequest, request: Request) -> Dict[str, Any]:
    return _coordinator(request).set_in_progress(call_id, body.requirement)


@router.post("/calls/{call_id}/complete")
def complete_requirement(call_id: str, body: RequirementRequest, request: Request) -> Dict[str, Any]:
    return _coordinator(request).complete_requirement(call_id, body.requirement)


@router.post("/calls/{call_id}/remove-requirement")
def remove_requirement(call_id: str, body: RequirementRequest, request: Request) -> Dict[str, Any]:
    return _coordinator(request).remove_requirement(call_id, body.requirement)


@router.get("/state")
def get_state(request: Request) -> Dict[str, Any]:
    return _coordinator(request).snapshot()


@router.websocket("/ws")
async def websocket_updates(websocket: WebSocket) -> None:
    """Initial state on connect, then every queue event.  ``ping`` gets ``pong``."""
    manager: ConnectionManager = websocket.app.state.manager
    coordinator: QueueCoordinator = websocket.app.state.coordinator

    await websocket.accept()
    observer = WebSocketObserver(websocket)
    await manager.connect(observer, lambda: coordinator.snapshot(include_counters=False))
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(observer)


@router.get("/events")
async def event_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events feed with the same messages as ``/ws``."""
    manager: ConnectionManager = request.app.state.manager
    coordinator = _coordinator(request)

    observer = StreamObserver()
    await manager.connect(observer, lambda: coordinator.snapshot(include_counters=False))

    async def stream():
        try:
            while not observer.closed:
                if await request.is_disconnected():
                    break
                message = await observer.get(timeout=SSE_HEARTBEAT_SECONDS)
                if message is None:
                    heartbeat = {"event": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()}
                    yield f"data: {json.dumps(heartbeat)}\n\n"
                    continue
                yield f"event: {message['event']}\ndata: {json.dumps(message)}\n\n"
        finally:
            await manager.disconnect(observer)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
