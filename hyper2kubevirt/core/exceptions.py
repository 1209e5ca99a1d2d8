# SPDX-License-Identifier: LGPL-3.0-or-later
# hyper2kubevirt/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _exit_code(raw: Any) -> int:
    """Process-style status: non-numeric or negative means 1, capped at 255."""
    try:
        code = int(raw)
    except (TypeError, ValueError):
        return 1
    return 1 if code < 0 else min(code, 255)


def _one_line(text: Optional[str], limit: int = 600) -> str:
    flat = " ".join((text or "").split())
    if len(flat) > limit:
        flat = flat[: limit - 3] + "..."
    return flat


_SECRET_KEY_PARTS = (
    "pass",
    "secret",
    "token",
    "apikey",
    "api_key",
    "auth",
    "cookie",
    "bearer",
    "private",
    "thumbprint",
)

# Keys that contain a secret-looking substring but only ever carry object names.
_NOT_SECRET_KEYS = frozenset({"secret_name", "secret_ref"})

REDACTED = "***REDACTED***"


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    if ks in _NOT_SECRET_KEYS:
        return False
    return any(p in ks for p in _SECRET_KEY_PARTS)


def redact_context(ctx: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (ctx or {}).items():
        out[k] = REDACTED if _is_secret_key(str(k)) else v
    return out


def _describe(exc: BaseException) -> Dict[str, str]:
    return {"type": type(exc).__name__, "message": _one_line(str(exc))}


@dataclass(eq=False)
class Hyper2KubevirtError(Exception):
    """
    Root of the error taxonomy. `str()` is the bare message (it ends up in
    plan conditions); context is redacted whenever it is rendered.
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _exit_code(self.code)
        self.msg = _one_line(self.msg) or type(self).__name__
        self.context = dict(self.context or {})
        super().__init__(self.msg)

    def with_context(self, **ctx: Any) -> "Hyper2KubevirtError":
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        text = self.msg
        if include_context and self.context:
            safe = redact_context(self.context)
            text += " [" + _one_line(", ".join(f"{k}={safe[k]!r}" for k in sorted(safe))) + "]"
        if include_cause and self.cause is not None:
            c = _describe(self.cause)
            text += f" (cause: {c['type']}: {c['message']})"
        return text

    def __str__(self) -> str:
        return self.msg

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(
            type=type(self).__name__,
            code=self.code,
            message=self.msg,
            context=redact_context(self.context),
        )
        if include_cause and self.cause is not None:
            out["cause"] = _describe(self.cause)
        return out


class StoreError(Hyper2KubevirtError):
    """Resource store operation failed."""
    pass


class NotFoundError(StoreError):
    """Object does not exist. Expected on lookups and deletes."""
    pass


class AlreadyExistsError(StoreError):
    """Create lost a race or hit a name held by another object."""
    pass


class ConflictError(StoreError):
    """Optimistic update conflict (stale resourceVersion)."""
    pass


class ForbiddenError(StoreError):
    """
    The controller's service account may not perform the operation.
    Never retried; surfaced to the operator.
    """
    pass


class TransientNetworkError(Hyper2KubevirtError):
    """
    The conversion pod control surface is not listening yet.
    Callers swallow it and wait for the next reconcile.
    """
    pass


class ValidationError(Hyper2KubevirtError):
    """Input cannot be used as-is: bad name, no template/preference, missing builder capability."""
    pass


class InternalError(Hyper2KubevirtError):
    """Anything else, wrapped with the object and VM it concerns."""
    pass


def wrap_internal(
    msg: str,
    exc: Optional[BaseException] = None,
    *,
    kind: Optional[str] = None,
    namespace: Optional[str] = None,
    name: Optional[str] = None,
    vm: Optional[str] = None,
    code: int = 70,
    **context: Any,
) -> Hyper2KubevirtError:
    """
    Attach object/VM context to a failure.

    Project errors keep their type (a Forbidden stays Forbidden) and only gain
    context; foreign exceptions become InternalError with the original as cause.
    """
    ctx: Dict[str, Any] = {}
    if kind:
        ctx["kind"] = kind
    if namespace or name:
        ctx["object"] = "/".join(p for p in (namespace, name) if p)
    if vm:
        ctx["vm"] = vm
    ctx.update(context)

    if isinstance(exc, Hyper2KubevirtError):
        for k, v in ctx.items():
            exc.context.setdefault(k, v)
        return exc
    return InternalError(code=code, msg=f"{msg}: {exc}" if exc is not None else msg, cause=exc, context=ctx)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """One-line rendering; -v adds the context, -vv the cause too."""
    if isinstance(e, Hyper2KubevirtError):
        return e.user_message(include_context=verbose >= 1, include_cause=verbose >= 2)
    text = _one_line(str(e))
    if verbose >= 2 or not text:
        return f"{type(e).__name__}: {text}" if text else type(e).__name__
    return text
