"""Clock abstraction so scheduling code never reads the wall clock directly."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real UTC clock backed by ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
