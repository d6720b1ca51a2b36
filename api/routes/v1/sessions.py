"""
api/routes/v1/sessions.py -- Active sessions of the current user.

Deleting a session row is revocation for session-aware consumers; an
already-issued JWT remains valid until it expires.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MessageResponse, SessionResponse
from auth.dependencies import get_current_user
from auth.models import User

router = APIRouter()


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionResponse]:
    sessions = request.app.state.user_store.list_sessions(current_user.id)
    return [SessionResponse.from_session(s) for s in sessions]


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    request: Request, session_id: int, current_user: User = Depends(get_current_user)
) -> MessageResponse:
    if not request.app.state.user_store.delete_session(session_id, current_user.id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Session not found."})
    return MessageResponse(message="Session revoked.")


@router.delete("/sessions", response_model=MessageResponse)
def revoke_all_sessions(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    removed = request.app.state.session_issuer.revoke_all(current_user.id)
    return MessageResponse(message=f"Revoked {removed} session(s).")
