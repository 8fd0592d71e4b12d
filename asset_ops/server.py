# server.py
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response

from . import analytics
from .auth import AuthenticationError, AuthorizationResult, User
from .change_feed import ChangeEvent, RemoteSyncError
from .config import CORS_ORIGINS, SESSION_COOKIE
from .csv_io import export_filename
from .db_supabase import SETUP_SQL
from .reconciler import pool_dispatcher
from .state import AppState


# ---------------- Helpers ----------------
def _guard(result: AuthorizationResult) -> None:
    if not result:
        status = 400 if result.kind == "invalid" else 403
        raise HTTPException(status_code=status, detail=result.reason)


def session_token(headers, cookies, query_token: Optional[str] = None) -> Optional[str]:
    """Bearer header first, then the session cookie, then an explicit ``token`` query value."""
    authorization = headers.get("authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return cookies.get(SESSION_COOKIE) or query_token


class LiveUpdates:
    """WebSocket clients that receive record/column/notification changes."""

    def __init__(self) -> None:
        self.clients = set()
        # Broadcasts scheduled from sync callbacks; kept until they finish
        self.pending = set()

    async def broadcast(self, event_type: str, data: Any) -> None:
        message = {"type": event_type, "data": data}
        disconnected = set()
        for client in self.clients:
            try:
                await client.send_json(message)
            except Exception:
                disconnected.add(client)
        # Clean up disconnected clients
        self.clients.difference_update(disconnected)

    def schedule(self, event_type: str, data: Any) -> None:
        task = asyncio.ensure_future(self.broadcast(event_type, data))
        self.pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: "asyncio.Task") -> None:
        self.pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            print(f"❌ Broadcast failed: {task.exception()!r}")


def create_app(state: Optional[AppState] = None) -> FastAPI:
    # Remote pushes run one at a time, in submission order
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-sync")
    if state is None:
        state = AppState()
        state.reconciler.dispatch = pool_dispatcher(executor, state.feed)
    live = LiveUpdates()

    def on_remote_event(event: ChangeEvent) -> None:
        if state.apply_change_event(event):
            live.schedule("record_event", event.to_dict())

    async def start_feed() -> None:
        remote = state.reconciler.remote
        if remote is None:
            return
        try:
            await remote.subscribe(on_remote_event)
        except RemoteSyncError as e:
            print(f"❌ {e}")
            state.feed.error(f"Realtime Error: {e}")

    def current_user(request: Request) -> User:
        user = state.user_for(session_token(request.headers, request.cookies))
        if user is None:
            raise HTTPException(status_code=401, detail="Login required")
        return user

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        saved = state.saved_db_config()
        if saved and not state.connected and await state.connect_backend(saved["url"], saved["key"]):
            await start_feed()
        yield
        remote = state.reconciler.remote
        if remote is not None:
            await remote.unsubscribe()
        executor.shutdown(wait=False)

    app = FastAPI(title="Grid Asset Ops", lifespan=lifespan)
    app.state.assets = state
    app.state.live = live

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # ---------------- Health ----------------
    @app.get("/health")
    async def health():
        return {"ok": True, "records": len(state.store), "db": state.db_status()}

    # ---------------- WebSocket for Live Updates ----------------
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        if state.user_for(session_token(websocket.headers, websocket.cookies, token)) is None:
            await websocket.close(code=1008)
            return
        await websocket.accept()
        live.clients.add(websocket)
        try:
            while True:
                # Keep connection alive
                await websocket.receive_text()
        except WebSocketDisconnect:
            live.clients.discard(websocket)

    # ---------------- Session ----------------
    @app.post("/auth/login")
    async def login(response: Response, payload: Dict[str, Any] = Body(...)):
        try:
            token, user = state.login(payload.get("username", ""), payload.get("password", ""),
                                      payload.get("api_key", ""))
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail=str(e))
        response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax")
        if state.connected:
            await state.refresh_from_remote()
        return {"username": user.username, "role": user.role, "token": token}

    @app.post("/auth/logout")
    async def logout(request: Request, response: Response):
        state.logout(session_token(request.headers, request.cookies))
        response.delete_cookie(SESSION_COOKIE)
        return {"ok": True}

    @app.get("/auth/session")
    async def session(request: Request):
        user = state.user_for(session_token(request.headers, request.cookies))
        if user is None:
            return {"user": None}
        return {"user": {"username": user.username, "role": user.role,
                         "can_edit": user.can_edit, "can_manage": user.can_manage}}

    # ---------------- Records ----------------
    @app.get("/records")
    async def list_records(q: str = "", actor: User = Depends(current_user)):
        if state.loading:
            raise HTTPException(status_code=503, detail="Refreshing from backend")
        items = analytics.search(state.store.query(), q, state.schema.fields)
        return {"items": items, "count": len(items), "columns": state.schema.to_list()}

    @app.get("/records/defaults")
    async def record_defaults(actor: User = Depends(current_user)):
        return state.new_record_defaults(actor)

    @app.get("/records/history")
    async def history(start: Optional[str] = None, end: Optional[str] = None, actor: User = Depends(current_user)):
        items = state.history(start, end)
        return {"items": items, "count": len(items)}

    @app.get("/records/export")
    async def export(start: Optional[str] = None, end: Optional[str] = None, format: str = "csv",
                     actor: User = Depends(current_user)):
        if format == "xlsx":
            path = await asyncio.to_thread(state.export_excel, start, end)
            return FileResponse(path, filename=export_filename("xlsx"))
        if format != "csv":
            raise HTTPException(status_code=400, detail=f"Unknown export format '{format}'")
        return Response(
            content=state.export_csv(start, end),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{export_filename("csv")}"'},
        )

    @app.post("/records/import")
    async def import_records(request: Request, format: str = "text", actor: User = Depends(current_user)):
        body = await request.body()
        if format == "xlsx":
            result, imported = state.import_excel(actor, body)
        else:
            result, imported = state.import_text(actor, body)
        _guard(result)
        await live.broadcast("import", {"count": len(imported)})
        return {"count": len(imported), "items": imported}

    @app.post("/records")
    async def add_record(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        result, record = state.add_record(actor, payload)
        _guard(result)
        await live.broadcast("record_added", record)
        return record

    @app.put("/records/{identity}")
    async def replace_record(identity: str, payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        result, record = state.replace_record(actor, identity, payload)
        _guard(result)
        if record is None:
            raise HTTPException(status_code=404, detail=f"No record {identity}")
        await live.broadcast("record_updated", record)
        return record

    @app.patch("/records/{identity}/status")
    async def update_status(identity: str, payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        status = str(payload.get("status") or "").strip()
        if not status:
            raise HTTPException(status_code=400, detail="status required")
        result, record = state.update_status(actor, identity, status)
        _guard(result)
        if record is None:
            raise HTTPException(status_code=404, detail=f"No record {identity}")
        await live.broadcast("record_updated", record)
        return record

    @app.delete("/records/{identity}")
    async def delete_record(identity: str, actor: User = Depends(current_user)):
        _guard(state.delete_record(actor, identity))
        await live.broadcast("record_deleted", {"id": identity})
        return {"ok": True}

    # ---------------- Columns ----------------
    async def columns_changed(result: AuthorizationResult):
        _guard(result)
        columns = state.schema.to_list()
        await live.broadcast("columns", columns)
        return {"columns": columns}

    @app.get("/columns")
    async def get_columns(actor: User = Depends(current_user)):
        return {"columns": state.schema.to_list()}

    @app.post("/columns")
    async def add_column(payload: Optional[Dict[str, Any]] = Body(None), actor: User = Depends(current_user)):
        return await columns_changed(state.schema.add_field(actor, payload))

    @app.put("/columns/order")
    async def reorder_columns(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        return await columns_changed(state.schema.reorder(actor, list(payload.get("order") or [])))

    @app.patch("/columns/{field_id}")
    async def update_column(field_id: str, payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        return await columns_changed(state.schema.update_field(actor, field_id, payload))

    @app.delete("/columns/{field_id}")
    async def delete_column(field_id: str, actor: User = Depends(current_user)):
        return await columns_changed(state.schema.remove_field(actor, field_id))

    # ---------------- Users ----------------
    @app.get("/users")
    async def list_users(actor: User = Depends(current_user)):
        result, users = state.list_users(actor)
        _guard(result)
        return {"users": users}

    @app.post("/users")
    async def create_user(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        _guard(state.users.create_user(actor, payload.get("username", ""), payload.get("password", ""),
                                       payload.get("role", "viewer")))
        return {"ok": True}

    @app.delete("/users/{username}")
    async def delete_user(username: str, actor: User = Depends(current_user)):
        _guard(state.users.delete_user(actor, username))
        return {"ok": True}

    @app.patch("/users/{username}")
    async def update_user_role(username: str, payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        _guard(state.users.update_role(actor, username, payload.get("role", "")))
        return {"ok": True}

    # ---------------- Analytics ----------------
    @app.get("/analytics/kpis")
    async def kpis(actor: User = Depends(current_user)):
        return analytics.kpis(state.store.query())

    @app.get("/analytics/kpis/{kind}")
    async def kpi_breakdown(kind: str, actor: User = Depends(current_user)):
        try:
            rows = analytics.kpi_breakdown(state.store.query(), kind)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"kind": kind, "breakdown": rows}

    @app.get("/analytics/chart")
    async def chart(group_by: str = "circle", metric: str = "count", actor: User = Depends(current_user)):
        try:
            return analytics.chart_series(state.store.query(), group_by, metric)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/analytics/engineers")
    async def engineers(actor: User = Depends(current_user)):
        return {"engineers": analytics.engineers(state.store.query())}

    @app.get("/analytics/engineers/{name}")
    async def engineer_detail(name: str, actor: User = Depends(current_user)):
        return analytics.engineer_breakdown(state.store.query(), name)

    # ---------------- Chat ----------------
    @app.post("/chat")
    async def chat(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        records = state.store.snapshot()
        reply = await asyncio.to_thread(
            state.assistant.ask, str(payload.get("text") or ""), state.api_key, state.schema.fields, records
        )
        return {"reply": reply, "transcript": state.assistant.transcript}

    @app.get("/chat")
    async def transcript(actor: User = Depends(current_user)):
        return {"transcript": state.assistant.transcript}

    @app.get("/notifications")
    async def notifications(limit: Optional[int] = None, actor: User = Depends(current_user)):
        return {"notifications": state.feed.latest(limit)}

    # ---------------- Backend connection ----------------
    @app.get("/db/status")
    async def db_status(actor: User = Depends(current_user)):
        return state.db_status()

    @app.get("/db/setup-sql")
    async def setup_sql():
        return Response(content=SETUP_SQL, media_type="text/plain")

    @app.post("/db/connect")
    async def connect(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        url = str(payload.get("url") or "").strip()
        key = str(payload.get("key") or "").strip()
        if not url or not key:
            raise HTTPException(status_code=400, detail="url and key required")
        previous = state.disconnect_backend() if state.connected else None
        if previous is not None:
            await previous.unsubscribe()
        if not await state.connect_backend(url, key):
            raise HTTPException(status_code=502, detail=state.db_error)
        await start_feed()
        await live.broadcast("reload", {"count": len(state.store)})
        return state.db_status()

    @app.post("/db/disconnect")
    async def disconnect(actor: User = Depends(current_user)):
        previous = state.disconnect_backend()
        if previous is not None:
            await previous.unsubscribe()
        return state.db_status()

    @app.post("/db/refresh")
    async def db_refresh(actor: User = Depends(current_user)):
        if not state.connected:
            raise HTTPException(status_code=409, detail="No backend configured")
        await state.refresh_from_remote()
        await live.broadcast("reload", {"count": len(state.store)})
        return state.db_status()

    @app.post("/feed/event")
    async def feed_event(payload: Dict[str, Any] = Body(...), actor: User = Depends(current_user)):
        """Apply a change event posted by a webhook or another process."""
        try:
            if "kind" in payload:
                event = ChangeEvent(payload["kind"], payload["identity"], payload.get("payload") or {})
            else:
                event = ChangeEvent.from_payload(payload)
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed change event: {e}")
        changed = state.apply_change_event(event)
        if changed:
            await live.broadcast("record_event", event.to_dict())
        return {"applied": changed}

    @app.post("/data/reset")
    async def reset_data(actor: User = Depends(current_user)):
        _guard(state.reset_local_data(actor))
        await live.broadcast("reload", {"count": len(state.store)})
        return {"ok": True, "count": len(state.store)}

    return app
