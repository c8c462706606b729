from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from app.database import AsyncSessionMaker, init_db
from app.settings import settings
from auth import TokenError, decode_user_token, get_current_user
from errors import IllegalAction
from game import TABLES, Table, apply_command, init_tables
from ledger import SqlLedger
from models import COMMAND_ADAPTER

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

logger.info("[CORS] allow_origins: %s", settings.allowed_origins())


# ---------- WebSockets hub ----------
class Hub:
    """Fans table updates out to the sockets watching each table."""

    def __init__(self):
        self.tables: Dict[str, List[WebSocket]] = {}
        self.ws_user: Dict[WebSocket, int] = {}

    async def connect(self, table_id: str, user_id: int, ws: WebSocket):
        await ws.accept()
        self.tables.setdefault(table_id, []).append(ws)
        self.ws_user[ws] = user_id

    def disconnect(self, table_id: str, ws: WebSocket) -> Optional[int]:
        user_id = self.ws_user.pop(ws, None)
        if ws in self.tables.get(table_id, []):
            self.tables[table_id].remove(ws)
        return user_id

    def is_watching(self, table_id: str, user_id: int) -> bool:
        return any(self.ws_user.get(ws) == user_id for ws in self.tables.get(table_id, []))

    async def table_updated(self, table: Table) -> None:
        for ws in list(self.tables.get(table.table_id, [])):
            viewer = self.ws_user.get(ws)
            try:
                payload = table.to_state(viewer).model_dump(mode="json", by_alias=True)
                await ws.send_json({"type": "state", "payload": payload})
            except RuntimeError:
                logger.info("[%s] Dropping closed socket for user %s", table.table_id, viewer)

    async def table_event(self, table: Table, message: dict, user_id: Optional[int] = None) -> None:
        for ws in list(self.tables.get(table.table_id, [])):
            if user_id is not None and self.ws_user.get(ws) != user_id:
                continue
            try:
                await ws.send_json(message)
            except RuntimeError:
                logger.info("[%s] Dropping closed socket for event %s", table.table_id, message.get("type"))


hub = Hub()


@app.on_event("startup")
async def _prepare() -> None:
    await init_db()
    if not TABLES:
        init_tables(SqlLedger(AsyncSessionMaker), hub, settings)


def _get_table_or_404(table_id: str) -> Table:
    table = TABLES.get(table_id)
    if not table:
        raise HTTPException(status_code=404, detail="table_not_found")
    return table


# ---------- REST ----------
@app.get("/api/tables/{table_id}/state")
async def table_state(table_id: str, user: Tuple[int, str] = Depends(get_current_user)):
    table = _get_table_or_404(table_id)
    return table.to_state(user[0]).model_dump(mode="json", by_alias=True)


# ---------- WS endpoint ----------
@app.websocket("/ws/{table_id}")
async def ws_table(ws: WebSocket, table_id: str, token: str = Query(...)):
    table = TABLES.get(table_id)
    if table is None:
        await ws.close(code=1008, reason="table_not_found")
        return
    try:
        user_id, username = decode_user_token(token)
    except TokenError as exc:
        await ws.close(code=1008, reason=str(exc))
        return

    session_id = uuid.uuid4().hex[:8]
    await hub.connect(table_id, user_id, ws)
    try:
        try:
            await table.reconnect(user_id, session_id)
        except IllegalAction:
            await ws.send_json(
                {"type": "state", "payload": table.to_state(user_id).model_dump(mode="json", by_alias=True)}
            )
        while True:
            data = await ws.receive_json()
            try:
                if isinstance(data, dict) and data.get("type") == "join" and not data.get("playerName"):
                    data = {**data, "playerName": username}
                command = COMMAND_ADAPTER.validate_python(data)
                await apply_command(table, user_id, command, session_id=session_id)
            except ValidationError as exc:
                await ws.send_json({"type": "error", "error": f"Invalid command: {exc.errors()[0]['msg']}"})
            except ValueError as exc:
                await ws.send_json({"type": "error", "error": str(exc)})
    except WebSocketDisconnect:
        logger.info("[%s] User %s disconnected", table_id, user_id)
    except RuntimeError:
        logger.exception("[%s] Server error handling user %s; closing socket", table_id, user_id)
        await ws.close(code=1011)
    finally:
        hub.disconnect(table_id, ws)
        if not hub.is_watching(table_id, user_id):
            await table.disconnect(user_id)
