"""
parley.api.routes.messages — Message endpoints
================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from parley.api.deps import get_config, get_current_user, get_engine, get_publisher
from parley.config import ParleyConfig
from parley.constants import MESSAGE_PAGE_DEFAULT, MESSAGE_PAGE_MAX
from parley.database.models import MessageType
from parley.engine.permissions import Actor
from parley.services import message_service
from parley.services.broadcast import EventPublisher
from parley.services.message_service import message_dict

router = APIRouter(tags=["messages"])


class Attachment(BaseModel):
    url: str
    filename: str | None = None
    mimetype: str | None = None
    size: int | None = None


class MessageCreate(BaseModel):
    content: str = ""
    message_type: str = MessageType.TEXT
    attachments: list[Attachment] = Field(default_factory=list)
    reply_to: int | None = None


@router.post("/communities/{community_id}/messages", status_code=201)
def send_message(
    community_id: int,
    body: MessageCreate,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: ParleyConfig = Depends(get_config),
    events: EventPublisher = Depends(get_publisher),
):
    message = message_service.send(
        engine,
        community_id,
        actor,
        body.content,
        message_type=body.message_type,
        attachments=[a.model_dump() for a in body.attachments],
        reply_to_id=body.reply_to,
        spam_visibility=cfg.spam_visibility,
        events=events,
    )
    return message_dict(message)


@router.get("/communities/{community_id}/messages")
def list_messages(
    community_id: int,
    before: datetime | None = None,
    after: datetime | None = None,
    limit: int = Query(MESSAGE_PAGE_DEFAULT, ge=1, le=MESSAGE_PAGE_MAX),
    include_deleted: bool = False,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: ParleyConfig = Depends(get_config),
):
    page = message_service.list_messages(
        engine,
        community_id,
        actor,
        before=before,
        after=after,
        limit=limit,
        include_deleted=include_deleted,
        spam_visibility=cfg.spam_visibility,
    )
    return {
        "messages": [message_dict(m) for m in page.messages],
        "pagination": {"total": page.total, "limit": limit, "has_more": page.has_more},
    }


@router.get("/messages/{message_id}")
def get_message(
    message_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return message_dict(message_service.get_message(engine, message_id, actor))


@router.delete("/messages/{message_id}")
def delete_message(
    message_id: int,
    reason: str | None = None,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    message = message_service.delete_message(
        engine, message_id, actor, reason=reason, events=events,
    )
    return {"id": message.id, "is_deleted": True, "deleted_by": message.deleted_by}


@router.post("/messages/{message_id}/pin")
def pin_message(
    message_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    message = message_service.set_pinned(engine, message_id, actor, pinned=True, events=events)
    return message_dict(message)


@router.delete("/messages/{message_id}/pin")
def unpin_message(
    message_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    message = message_service.set_pinned(engine, message_id, actor, pinned=False, events=events)
    return message_dict(message)
