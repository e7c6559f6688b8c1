"""Transport layer type definitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any


@dataclass
class PendingRequest:
    """Request waiting for its correlated reply."""

    request_id: int
    method: str
    src: str | None
    created_at: float
    timeout: float
    future: asyncio.Future[dict[str, Any]] = field(repr=False)


@dataclass(frozen=True)
class PollTarget:
    """What the poll scheduler needs to know about one device."""

    device_id: str
    interval: float | None = None
    broadcast: bool = False
    address: str | None = None
    port: int | None = None
