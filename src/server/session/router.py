from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_session_store
from .models import MessageRecord, SessionRecord
from .schemas import (
    DeleteResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionDetail,
    SessionListResponse,
    SessionMessage,
    SessionSummary,
    SessionUpdateRequest,
)
from .store import SQLiteSessionStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    store: SQLiteSessionStore = Depends(get_session_store),
) -> SessionListResponse:
    records = await store.list_sessions()
    return SessionListResponse(sessions=[_to_summary(record) for record in records])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SessionCreateResponse)
async def create_session(
    payload: SessionCreateRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
) -> SessionCreateResponse:
    title = payload.title.strip() if payload.title else None
    session = await store.create_session(title=title)
    return SessionCreateResponse(session=_to_summary(session))


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
) -> SessionDetail:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    messages = await store.get_messages(session_id)
    return _to_detail(session, messages)


@router.patch("/{session_id}", response_model=SessionSummary)
async def update_session(
    session_id: str,
    payload: SessionUpdateRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
) -> SessionSummary:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    session = await store.rename_session(session_id, payload.title)
    return _to_summary(session)


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_session(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
) -> DeleteResponse:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    await store.delete_session(session_id)
    return DeleteResponse(success=True)


def _to_summary(record: SessionRecord) -> SessionSummary:
    return SessionSummary(
        id=record.id,
        title=record.title,
        last_message_preview=record.last_message_preview,
        updated_at=record.updated_at,
        created_at=record.created_at,
    )


def _to_message(record: MessageRecord) -> SessionMessage:
    return SessionMessage(
        id=record.id,
        role=record.role,
        content=record.content,
        reasoning_trace=record.reasoning_trace,
        tool_call_results=record.tool_call_results,
        seq=record.seq,
        created_at=record.created_at,
    )


def _to_detail(session: SessionRecord, messages: list[MessageRecord]) -> SessionDetail:
    return SessionDetail(
        **_to_summary(session).model_dump(),
        messages=[_to_message(message) for message in messages],
    )
