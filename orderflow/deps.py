# orderflow/deps.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from orderflow.container import Container
from orderflow.core.config import JWT_ALGORITHM, JWT_SECRET_KEY
from orderflow.core.database import get_db
from orderflow.core.request_context import set_request_context
from orderflow.models.tenant import Tenant

# Tokens are issued by the identity service; this API only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    tenant_id: Optional[int] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_user_id(payload: Dict[str, Any]) -> Optional[str]:
    """Reads the subject from ``sub``, falling back to ``user_id``."""
    raw = payload.get("sub")
    if raw is None:
        raw = payload.get("user_id")
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _extract_tenant_id(payload: Dict[str, Any]) -> Optional[int]:
    raw = payload.get("tenant_id")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None


def decode_identity(token: str) -> Identity:
    if not JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not configured")
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired token") from exc
    user_id = _extract_user_id(payload)
    if user_id is None:
        raise ValueError("Token has no subject")
    return Identity(user_id=user_id, tenant_id=_extract_tenant_id(payload))


def get_current_identity(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> Identity:
    if not token:
        raise _unauthorized("Not authenticated")
    try:
        identity = decode_identity(token)
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc
    request.state.user = identity
    set_request_context(user_id=identity.user_id)
    return identity


def get_current_tenant(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Tenant:
    """Tenant owned by the caller; the token's tenant claim narrows the choice."""
    query = db.query(Tenant).filter(Tenant.owner_id == identity.user_id, Tenant.is_active.is_(True))
    if identity.tenant_id is not None:
        query = query.filter(Tenant.id == identity.tenant_id)
    tenant = query.order_by(Tenant.id.asc()).first()
    if not tenant:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant for this identity")
    set_request_context(tenant_id=tenant.id)
    return tenant


def require_tenant_owner(db: Session, identity: Identity, tenant_id: int) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant or tenant.owner_id != identity.user_id:
        logger.warning("tenant ownership check failed", extra={"tenant_id": tenant_id, "user_id": identity.user_id})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this tenant")
    set_request_context(tenant_id=tenant.id)
    return tenant


def get_container(request: Request) -> Container:
    return request.app.state.container
