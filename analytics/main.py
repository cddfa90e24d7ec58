from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import queue
import threading
import time
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from config import (
    AUTO_INITIALIZE,
    DB_PATH,
    DEFAULT_PARENT_ORIGIN,
    DELIVERY_LOG_LIMIT,
    FLUSH_DELAY_SECONDS,
    GAME_ID,
    LOG_LEVEL,
    PENDING_QUEUE_KEY,
    STREAM_BUFFER_SIZE,
)
from .channels import DiagnosticChannel, HostBridges, StreamBridge, default_channels
from .database import Database
from .dispatcher import ReportDispatcher, recent_deliveries
from .models import utc_now
from .pending_queue import PendingQueue
from .report import build_report_payload
from .session_recorder import SessionRecorder

logger = logging.getLogger(__name__)

STREAM_KEEPALIVE_SECONDS = 15.0
STREAM_POLL_SECONDS = 0.25


class InitializeRequest(BaseModel):
    game_id: str | None = None
    session_name: str | None = None


class StartAttemptRequest(BaseModel):
    level_id: str


class EndAttemptRequest(BaseModel):
    level_id: str
    successful: bool
    elapsed_ms: int
    reward: float = 0


class SubEventRequest(BaseModel):
    level_id: str
    sub_event_id: str
    label: str
    expected: str
    actual: str
    elapsed_ms: int
    reward: float = 0


class RawMetricRequest(BaseModel):
    key: str
    value: str | int | float | bool | None = None


class EndSessionRequest(BaseModel):
    level_id: str | None = None
    elapsed_ms: int = 0
    submit: bool = True


def _default_session_name() -> str:
    return f"session_{int(time.time() * 1000)}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db = Database(DB_PATH)
    bridges = HostBridges(parent_origin=DEFAULT_PARENT_ORIGIN)
    stream = StreamBridge(buffer_size=STREAM_BUFFER_SIZE)
    # Only the stream is wired over HTTP; in-process embedders attach the tracker and parent frame.
    bridges.native_post_message = stream.post_message

    recorder = SessionRecorder()
    dispatcher = ReportDispatcher(
        default_channels(bridges),
        PendingQueue(db, PENDING_QUEUE_KEY),
        fallback=DiagnosticChannel(),
        flush_delay_seconds=FLUSH_DELAY_SECONDS,
        db=db,
        delivery_log_limit=DELIVERY_LOG_LIMIT,
    )

    app.state.db = db
    app.state.bridges = bridges
    app.state.stream = stream
    app.state.recorder = recorder
    app.state.dispatcher = dispatcher
    app.state.session_lock = threading.RLock()
    app.state.started_at = utc_now()

    if AUTO_INITIALIZE:
        recorder.initialize(GAME_ID, _default_session_name())
    if len(dispatcher.pending):
        logger.info("%d queued reports waiting for a transport", len(dispatcher.pending))
    try:
        yield
    finally:
        dispatcher.close()
        db.close()


app = FastAPI(title="Level Telemetry", lifespan=lifespan)


def _recorder(request: Request) -> SessionRecorder:
    return request.app.state.recorder


def _dispatcher(request: Request) -> ReportDispatcher:
    return request.app.state.dispatcher


def _not_initialized() -> dict[str, object]:
    return {"ok": False, "error": "Analytics session is not initialized."}


@app.get("/api/health")
def health(request: Request) -> dict[str, object]:
    recorder = _recorder(request)
    dispatcher = _dispatcher(request)
    bridges: HostBridges = request.app.state.bridges
    stream: StreamBridge = request.app.state.stream
    return {
        "ok": True,
        "started_at": request.app.state.started_at,
        "now": utc_now(),
        "db_path": str(DB_PATH),
        "initialized": recorder.initialized,
        "game_id": recorder.game_id,
        "session_id": recorder.session_id,
        "pending_reports": len(dispatcher.pending),
        "stream_subscribers": stream.subscriber_count,
        "parent_origin": bridges.parent_origin,
        "channels": [
            {"name": channel.name, "available": channel.is_available()} for channel in dispatcher.channels
        ],
    }


@app.post("/api/session/initialize")
def initialize_session(request: Request, payload: InitializeRequest) -> dict[str, object]:
    recorder = _recorder(request)
    with request.app.state.session_lock:
        session_id = recorder.initialize(
            payload.game_id or GAME_ID,
            payload.session_name or _default_session_name(),
        )
    return {"ok": True, "session_id": session_id}


@app.post("/api/session/reset")
def reset_session(request: Request) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        recorder.reset()
    return {"ok": True, "session_id": recorder.session_id}


@app.post("/api/session/end")
def end_session(request: Request, payload: EndSessionRequest) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        level_id = payload.level_id or recorder.current_open_level()
        abandoned = bool(level_id) and recorder.abandon_attempt(level_id, payload.elapsed_ms)
        snapshot = recorder.snapshot() if (abandoned and payload.submit) else None
    report: dict[str, Any] | None = None
    if snapshot is not None:
        report = _dispatcher(request).submit(snapshot)
        logger.info("Session ended with an incomplete attempt at %s", level_id)
    return {"ok": True, "abandoned": abandoned, "level_id": level_id, "report": report}


@app.post("/api/attempts/start")
def start_attempt(request: Request, payload: StartAttemptRequest) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        recorder.start_attempt(payload.level_id)
    return {"ok": True}


@app.post("/api/attempts/end")
def end_attempt(request: Request, payload: EndAttemptRequest) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        closed = recorder.end_attempt(payload.level_id, payload.successful, payload.elapsed_ms, payload.reward)
    if not closed:
        return {"ok": False, "error": f"No open attempt for level {payload.level_id}."}
    return {"ok": True}


@app.post("/api/attempts/sub-event")
def attach_sub_event(request: Request, payload: SubEventRequest) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        attached = recorder.attach_sub_event(
            payload.level_id,
            payload.sub_event_id,
            payload.label,
            payload.expected,
            payload.actual,
            payload.elapsed_ms,
            payload.reward,
        )
    if not attached:
        return {"ok": False, "error": f"No open attempt for level {payload.level_id}."}
    return {"ok": True}


@app.post("/api/metrics")
def add_raw_metric(request: Request, payload: RawMetricRequest) -> dict[str, object]:
    recorder = _recorder(request)
    if not recorder.initialized:
        return _not_initialized()
    with request.app.state.session_lock:
        recorder.add_raw_metric(payload.key, payload.value)
    return {"ok": True}


@app.get("/api/report")
def current_report(request: Request) -> dict[str, object]:
    with request.app.state.session_lock:
        snapshot = _recorder(request).snapshot()
    if snapshot is None:
        return _not_initialized()
    return {"ok": True, "report": build_report_payload(snapshot)}


@app.post("/api/report/submit")
def submit_report(request: Request) -> dict[str, object]:
    with request.app.state.session_lock:
        snapshot = _recorder(request).snapshot()
    if snapshot is None:
        return _not_initialized()
    report = _dispatcher(request).submit(snapshot)
    return {"ok": True, "report": report, "pending_reports": len(_dispatcher(request).pending)}


@app.get("/api/pending")
def pending_reports(request: Request) -> dict[str, object]:
    entries = _dispatcher(request).pending.peek()
    return {"ok": True, "count": len(entries), "reports": entries}


@app.post("/api/pending/flush")
def flush_pending(request: Request) -> dict[str, object]:
    delivered = _dispatcher(request).flush_pending()
    return {"ok": True, "delivered": delivered}


@app.post("/api/host/online")
def host_online(request: Request) -> dict[str, object]:
    return {"ok": True, "delivered": _dispatcher(request).on_reconnect()}


@app.post("/api/host/visible")
def host_visible(request: Request) -> dict[str, object]:
    return {"ok": True, "delivered": _dispatcher(request).on_visible()}


@app.post("/api/host/message")
def host_message(request: Request, message: dict[str, Any]) -> dict[str, object]:
    recognized = _dispatcher(request).handle_message(message)
    bridges: HostBridges = request.app.state.bridges
    return {"ok": True, "recognized": recognized, "parent_origin": bridges.parent_origin}


@app.get("/api/deliveries")
def deliveries(
    request: Request, limit: int = Query(default=50, ge=1, le=500)
) -> dict[str, object]:
    db: Database = request.app.state.db
    return {"deliveries": recent_deliveries(db, limit=limit)}


def connect_stream_subscriber(state: Any) -> queue.Queue[str]:
    """Subscribe a stream client; the first one to arrive receives the queued backlog."""
    bridge: StreamBridge = state.stream
    inbox = bridge.subscribe()
    if bridge.subscriber_count == 1:
        state.dispatcher.on_reconnect()
    return inbox


async def stream_events(request: Request, bridge: StreamBridge, inbox: queue.Queue[str]):
    idle = 0.0
    try:
        while not await request.is_disconnected():
            try:
                text = inbox.get_nowait()
            except queue.Empty:
                await asyncio.sleep(STREAM_POLL_SECONDS)
                idle += STREAM_POLL_SECONDS
                if idle >= STREAM_KEEPALIVE_SECONDS:
                    idle = 0.0
                    yield ": keep-alive\n\n"
                continue
            idle = 0.0
            yield f"data: {text}\n\n"
    finally:
        bridge.unsubscribe(inbox)


@app.get("/api/stream")
def stream(request: Request) -> StreamingResponse:
    inbox = connect_stream_subscriber(request.app.state)
    return StreamingResponse(
        stream_events(request, request.app.state.stream, inbox),
        media_type="text/event-stream",
    )
