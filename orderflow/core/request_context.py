from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_TENANT_ID_CTX: ContextVar[str | None] = ContextVar("tenant_id", default=None)
_USER_ID_CTX: ContextVar[str | None] = ContextVar("user_id", default=None)
_SESSION_ID_CTX: ContextVar[str | None] = ContextVar("session_id", default=None)
_STEP_CTX: ContextVar[str | None] = ContextVar("step", default=None)

_VARS = {
    "request_id": _REQUEST_ID_CTX,
    "tenant_id": _TENANT_ID_CTX,
    "user_id": _USER_ID_CTX,
    "session_id": _SESSION_ID_CTX,
    "step": _STEP_CTX,
}


def set_request_context(**values: object) -> None:
    """Sets the given context fields; `None` values are left untouched."""
    for name, value in values.items():
        if value is not None:
            _VARS[name].set(str(value))


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_tenant_id() -> str | None:
    return _TENANT_ID_CTX.get()


def get_user_id() -> str | None:
    return _USER_ID_CTX.get()


def get_session_id() -> str | None:
    return _SESSION_ID_CTX.get()


def get_step() -> str | None:
    return _STEP_CTX.get()


@contextmanager
def conversation_context(*, tenant_id: int, session_id: int | None, step: str | None) -> Iterator[None]:
    """Scopes tenant/session/step onto every log record emitted inside the block."""
    tokens = [
        (_TENANT_ID_CTX, _TENANT_ID_CTX.set(str(tenant_id))),
        (_SESSION_ID_CTX, _SESSION_ID_CTX.set(str(session_id) if session_id is not None else None)),
        (_STEP_CTX, _STEP_CTX.set(step)),
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def clear_request_context() -> None:
    for var in _VARS.values():
        var.set(None)
