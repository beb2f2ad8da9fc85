"""Operator console and widget REST routes."""

from datetime import datetime, timezone
from typing import Any, NoReturn

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ...app import Application
from ...errors import (
    IdentityNotFound,
    InvalidRequest,
    MessageNotFound,
    RelayError,
    StoreUnavailable,
    Unauthorized,
)
from ...models import ConfigKey, Subscription

EDITABLE_CONFIG_KEYS = {
    ConfigKey.CONSOLE_PASSWORD,
    ConfigKey.NOTIFICATIONS_ENABLED,
    ConfigKey.BOT_CHAT_ID,
}
WIPE_CONFIRMATION = "WIPE"


class IssueResponse(BaseModel):
    identity_id: str


class SubscribeRequest(BaseModel):
    identity_id: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    keys: dict[str, Any] = Field(default_factory=dict)


class ConfigRequest(BaseModel):
    value: str


class MuteRequest(BaseModel):
    muted: bool = True


class MergeRequest(BaseModel):
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)


class WipeRequest(BaseModel):
    confirm: str


class StatusResponse(BaseModel):
    status: str


def raise_http(error: RelayError) -> NoReturn:
    """Map a relay failure onto an HTTP error."""
    if isinstance(error, (IdentityNotFound, MessageNotFound)):
        raise HTTPException(status_code=404, detail=error.detail)
    if isinstance(error, InvalidRequest):
        raise HTTPException(status_code=400, detail=error.detail)
    if isinstance(error, Unauthorized):
        raise HTTPException(status_code=403, detail=error.detail)
    if isinstance(error, StoreUnavailable):
        raise HTTPException(status_code=503, detail="store unavailable, retry later")
    raise HTTPException(status_code=500, detail=error.detail)


def create_admin_router(app: Application) -> APIRouter:
    """Create admin router."""
    router = APIRouter(prefix="/api", tags=["admin"])

    @router.get("/identity/issue", response_model=IssueResponse)
    async def issue_identity() -> dict:
        """Identity-issuance handshake for a new widget session."""
        try:
            return {"identity_id": await app.engine.issue_identity()}
        except RelayError as e:
            raise_http(e)

    @router.get("/admin/users")
    async def list_identities() -> list[dict]:
        try:
            overviews = await app.engine.list_identities()
        except RelayError as e:
            raise_http(e)
        return [overview.to_dict() for overview in overviews]

    @router.get("/history/{identity_id}")
    async def get_history(identity_id: str) -> list[dict]:
        try:
            messages = await app.engine.history(identity_id)
        except RelayError as e:
            raise_http(e)
        return [message.to_dict() for message in messages]

    @router.get("/stats")
    async def get_stats() -> dict:
        try:
            return await app.moderation.stats()
        except RelayError as e:
            raise_http(e)

    @router.post("/push/subscribe", response_model=StatusResponse)
    async def subscribe(request: SubscribeRequest) -> dict:
        try:
            if await app.storage.get_identity(request.identity_id) is None:
                raise IdentityNotFound(request.identity_id)
            await app.storage.save_subscription(
                Subscription(
                    id="",
                    identity_id=request.identity_id,
                    endpoint=request.endpoint,
                    keys=request.keys,
                    created_at=datetime.now(timezone.utc),
                )
            )
        except RelayError as e:
            raise_http(e)
        return {"status": "ok"}

    @router.put("/config/{key}", response_model=StatusResponse)
    async def set_config(key: str, request: ConfigRequest) -> dict:
        if key not in EDITABLE_CONFIG_KEYS:
            raise HTTPException(status_code=404, detail=f"Unknown config key {key}")
        try:
            await app.storage.set_config(key, request.value)
        except RelayError as e:
            raise_http(e)
        return {"status": "ok"}

    return router


def create_moderation_router(app: Application) -> APIRouter:
    """Create moderation router (the bot's commands land here too)."""
    router = APIRouter(prefix="/api/moderation", tags=["moderation"])

    @router.post("/{identity_id}/mute")
    async def mute(identity_id: str, request: MuteRequest) -> dict:
        try:
            identity = await app.moderation.mute(identity_id, request.muted)
        except RelayError as e:
            raise_http(e)
        return identity.to_dict()

    @router.post("/{identity_id}/block", response_model=StatusResponse)
    async def block(identity_id: str) -> dict:
        try:
            await app.moderation.block(identity_id)
        except RelayError as e:
            raise_http(e)
        return {"status": "ok"}

    @router.post("/{identity_id}/unblock")
    async def unblock(identity_id: str) -> dict:
        try:
            identity = await app.moderation.unblock(identity_id)
        except RelayError as e:
            raise_http(e)
        return identity.to_dict()

    @router.delete("/{identity_id}", response_model=StatusResponse)
    async def delete_identity(identity_id: str) -> dict:
        try:
            await app.moderation.delete_all_data(identity_id)
        except RelayError as e:
            raise_http(e)
        return {"status": "ok"}

    @router.post("/merge")
    async def merge(request: MergeRequest) -> dict:
        try:
            result = await app.moderation.merge(request.source_id, request.target_id)
        except RelayError as e:
            raise_http(e)
        return {
            "status": "ok",
            "moved_messages": result.moved_messages,
            "moved_subscriptions": result.moved_subscriptions,
            "target_created": result.target_created,
        }

    @router.post("/wipe")
    async def wipe(request: WipeRequest) -> dict:
        if request.confirm != WIPE_CONFIRMATION:
            raise HTTPException(
                status_code=400, detail=f"Send confirm={WIPE_CONFIRMATION!r} to wipe"
            )
        try:
            closed = await app.moderation.wipe_all()
        except RelayError as e:
            raise_http(e)
        return {"status": "ok", "connections_closed": closed}

    return router
