from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from scansync.config import JWT_SECRET, JWT_ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES

security = HTTPBearer(auto_error=False)

def create_access_token(data: dict, expires_minutes: Optional[int] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

def verify_token(token: str):
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None

def get_store(request: Request):
    return request.app.state.store

def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    token_auth: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> int:
    # 1. Try JWT Token (Highest Priority)
    if token_auth:
        payload = verify_token(token_auth.credentials)
        if payload and str(payload.get("sub", "")).isdigit():
            return int(payload["sub"])

    # 2. Try Legacy Header (Fallback)
    if x_user_id and str(x_user_id).isdigit():
        return int(x_user_id)

    # 3. Guest
    return 0

def _lookup_member(user_id: int, store) -> Optional[Dict[str, Any]]:
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return store.get_member(user_id)

def get_team_member(
    user_id: int = Depends(get_current_user_id),
    store=Depends(get_store),
) -> Dict[str, Any]:
    member = _lookup_member(user_id, store)
    if not member:
        raise HTTPException(status_code=403, detail="No business access")
    return member

def require_count_permission(
    user_id: int = Depends(get_current_user_id),
    store=Depends(get_store),
) -> Dict[str, Any]:
    member = _lookup_member(user_id, store)
    if not member or not (member.get("permissions") or {}).get("count"):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return member

def request_info(request: Request) -> Dict[str, Any]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip": request.client.host if request.client else None,
    }
