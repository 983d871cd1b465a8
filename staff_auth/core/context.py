import contextvars
from contextlib import contextmanager
from typing import Iterator

_tenant_id: contextvars.ContextVar[str] = contextvars.ContextVar("tenant_id", default="-")
_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
_identity_id: contextvars.ContextVar[str] = contextvars.ContextVar("identity_id", default="-")
_in_request: contextvars.ContextVar[bool] = contextvars.ContextVar("in_request", default=False)


def get_tenant_id() -> str:
    return _tenant_id.get()


def get_request_id() -> str:
    return _request_id.get()


def get_identity_id() -> str:
    return _identity_id.get()


def bind_identity(identity_id, tenant_id: str | None = None) -> None:
    """Attach the identity being authenticated to the enclosing ``request_scope``.

    Outside a scope this does nothing, so the binding never outlives the request.
    """
    if not _in_request.get():
        return
    _identity_id.set(str(identity_id))
    if tenant_id:
        _tenant_id.set(tenant_id)


@contextmanager
def request_scope(request_id: str, tenant_id: str | None = None) -> Iterator[None]:
    """Scope log context to one caller request; restores the previous values on exit."""
    tokens = [
        (_request_id, _request_id.set(request_id)),
        (_tenant_id, _tenant_id.set(tenant_id or "-")),
        (_identity_id, _identity_id.set("-")),
        (_in_request, _in_request.set(True)),
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
