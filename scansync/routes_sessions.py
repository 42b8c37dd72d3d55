from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException

from scansync.auth_utils import get_store, get_team_member
from scansync.pubsub_utils import _broadcast
from scansync.schemas import CountingSessionCreate

router = APIRouter(prefix="/api/counting/sessions")

@router.get("")
def list_sessions(member: Dict[str, Any] = Depends(get_team_member), store=Depends(get_store)):
    """Planning and active counting sessions for the caller's business."""
    return {"sessions": store.list_active_sessions(member["business_id"])}

@router.post("", status_code=201)
def create_session(
    payload: CountingSessionCreate,
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    data = payload.model_dump(exclude={"auto_start"})
    data["assigned_users"] = [member["user_id"]]
    session = store.create_session(member["business_id"], data)
    _broadcast("session.created", {"session_id": session["id"]})

    if payload.auto_start:
        session = store.start_session(member["business_id"], session["id"])
        _broadcast("session.started", {"session_id": session["id"]})

    return {"session": session}

@router.post("/{session_id}/start")
def start_session(
    session_id: str,
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    session = store.start_session(member["business_id"], session_id)
    if not session:
        raise HTTPException(404, "Session not found")
    _broadcast("session.started", {"session_id": session["id"]})
    return {"session": session}
