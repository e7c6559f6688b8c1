"""
Operation ids for tracing one poll tick, command, discovery run or cloud fetch.

The id lives in a contextvar so it follows the operation across awaits and
into every log record emitted while it is active.
"""

from __future__ import annotations

import contextvars
import secrets
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "current_operation_id",
    "ensure_operation_id",
    "new_operation_id",
    "operation_context",
]

_operation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "marstek_operation_id",
    default=None,
)


def new_operation_id(kind: str | None = None) -> str:
    """
    Build a fresh operation id.

    Args:
        kind: Optional short prefix such as ``"poll"`` or ``"cmd"``

    Returns:
        ``"<kind>-<12 hex chars>"`` or just the hex part when no kind is given
    """
    token = secrets.token_hex(6)
    return f"{kind}-{token}" if kind else token


def current_operation_id() -> str | None:
    return _operation_id.get()


@contextmanager
def operation_context(kind: str | None = None, operation_id: str | None = None) -> Generator[str]:
    """
    Scope an operation id for the duration of a ``with`` block.

    The previous id is restored on exit, so nested operations log under their
    own id and the outer one resumes afterwards.

    Example:
        with operation_context("cmd") as op_id:
            await dispatcher.set_configuration(endpoint, config)
    """
    op_id = operation_id or new_operation_id(kind)
    token = _operation_id.set(op_id)
    try:
        yield op_id
    finally:
        _operation_id.reset(token)


def ensure_operation_id(kind: str | None = None) -> str:
    """Return the active operation id, creating one for task entry points."""
    op_id = _operation_id.get()
    if op_id is None:
        op_id = new_operation_id(kind)
        _ = _operation_id.set(op_id)
    return op_id
