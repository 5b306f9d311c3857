from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse  # type: ignore

from clinic_realtime import __version__
from clinic_realtime.config import get_settings
from clinic_realtime.feed.interfaces import ChangeFeed, RowReader
from clinic_realtime.feed.local import InMemoryRows, LocalChangeFeed
from clinic_realtime.notify.ntfy import NtfySender
from clinic_realtime.notify.outbox import Outbox
from clinic_realtime.notify.permission import PermissionState
from clinic_realtime.ops.metrics import REGISTRY
from clinic_realtime.utils.log import logger, set_tenant_id, set_user_id

from .session import LiveSession, SessionRegistry


class VisibilityIn(BaseModel):
    hidden: bool


class PermissionIn(BaseModel):
    state: str


def _session(request: Request, session_id: str) -> LiveSession:
    registry: SessionRegistry = request.app.state.sessions
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return session


def create_app(
    *,
    feed: ChangeFeed | None = None,
    reader: RowReader | None = None,
    outbox: Outbox | None = None,
) -> FastAPI:
    """
    Build the notification web service.

    `feed`/`reader` default to the in-process implementations; `outbox` defaults to
    an ntfy-backed outbox when `NTFY_ENABLED=1`, otherwise escalations stay local.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = get_settings()
        box = outbox
        if box is None and bool(s.ntfy_enabled):
            box = Outbox(NtfySender())
        if box is not None:
            await box.start()
        app.state.outbox = box
        app.state.sessions = SessionRegistry(app.state.feed, app.state.reader, outbox=box)
        logger.info("server_started", version=__version__, outbox=box is not None)
        yield
        await app.state.sessions.close_all()
        if box is not None:
            await box.stop()
        logger.info("server_stopped")

    app = FastAPI(title="clinic-realtime", version=__version__, lifespan=lifespan)
    app.state.feed = feed if feed is not None else LocalChangeFeed()
    app.state.reader = reader if reader is not None else InMemoryRows()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            logger.info(
                "http_done",
                method=request.method,
                path=request.url.path,
                status=getattr(response, "status_code", 0),
                duration_ms=(time.perf_counter() - t0) * 1000.0,
            )
        return response

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/notifications/stream")
    async def notifications_stream(
        request: Request,
        structure_id: str | None = Query(default=None),
        x_user_id: str | None = Header(default=None),
        permission: str | None = Query(default=None),
    ):
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing user")
        if not structure_id:
            raise HTTPException(status_code=400, detail="Missing structure_id")
        set_user_id(x_user_id)
        set_tenant_id(structure_id)
        registry: SessionRegistry = request.app.state.sessions
        session = await registry.open(
            tenant_id=structure_id,
            user_id=x_user_id,
            permission=PermissionState.parse(permission),
        )
        ping = float(get_settings().sse_ping_sec)

        async def gen():
            try:
                yield {
                    "event": "session",
                    "data": json.dumps(
                        {"session_id": session.id, "structure_id": session.tenant_id}
                    ),
                }
                while True:
                    if await request.is_disconnected():
                        return
                    msg = await session.channel.next_message(timeout=1.0)
                    if msg is not None:
                        yield msg
            except asyncio.CancelledError:
                return
            finally:
                await registry.close(session.id)

        return EventSourceResponse(gen(), ping=int(max(1.0, ping)))

    @app.post("/api/notifications/{session_id}/visibility")
    async def notifications_visibility(request: Request, session_id: str, body: VisibilityIn):
        session = _session(request, session_id)
        session.channel.hidden = bool(body.hidden)
        return {"ok": True, "hidden": session.channel.hidden}

    @app.post("/api/notifications/{session_id}/permission")
    async def notifications_permission(request: Request, session_id: str, body: PermissionIn):
        session = _session(request, session_id)
        state = PermissionState.parse(body.state)
        session.channel.answer_permission(state)
        session.context.permission.state = state
        logger.info("permission_reported", session_id=session.id, state=state.value)
        return {"ok": True, "state": state.value}

    @app.post("/api/notifications/{session_id}/permission/request")
    async def notifications_permission_request(request: Request, session_id: str):
        session = _session(request, session_id)
        state = session.context.permission.state
        prompted = state is PermissionState.DEFAULT and session.multiplexer.request_permission()
        return {"ok": True, "state": state.value, "prompted": bool(prompted)}

    @app.post("/api/notifications/{session_id}/desktop/{tag}/click")
    async def notifications_desktop_click(request: Request, session_id: str, tag: str):
        session = _session(request, session_id)
        if not session.channel.click(tag):
            raise HTTPException(status_code=404, detail="Unknown notification")
        return {"ok": True}

    return app


app = create_app()
