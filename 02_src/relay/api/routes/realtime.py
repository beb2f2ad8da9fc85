"""WebSocket transport for user widgets and operator consoles."""

import asyncio
import json
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from ...app import Application
from ...logging_config import connection_logger
from ...models import EventType, JoinEvent, OutboundEvent, parse_event


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the relay's IConnection."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._connection_id = str(uuid.uuid4())
        self._send_lock = asyncio.Lock()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send(self, event: OutboundEvent) -> None:
        async with self._send_lock:
            await self._websocket.send_json(event.to_dict())

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        await self._websocket.close(code=code)


def _invalid_event(detail: str) -> OutboundEvent:
    return OutboundEvent(EventType.ERROR, {"code": "invalid_event", "detail": detail})


def create_realtime_router(app: Application) -> APIRouter:
    """Create realtime router."""
    router = APIRouter(tags=["realtime"])

    @router.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        engine = app.engine
        engine.connect(connection)
        log = connection_logger(__name__, connection.connection_id)
        log.debug("Connection opened")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = parse_event(json.loads(raw))
                except json.JSONDecodeError:
                    await connection.send(_invalid_event("payload is not JSON"))
                    continue
                except ValidationError as e:
                    detail = str(e.errors()[0]["msg"])
                    log.info("Rejected malformed event: %s", detail)
                    await connection.send(_invalid_event(detail))
                    continue

                if isinstance(event, JoinEvent) and event.identity_id:
                    log = log.bind(identity_id=event.identity_id)
                await engine.handle(connection.connection_id, event)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # receive after a server-side close (eviction)
            log.debug("Connection ended: %s", e)
        finally:
            await engine.disconnect(connection.connection_id)

    return router
