"""Shared cap on concurrent Agent Runner sessions."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class SessionGovernor:
    """Bounds how many agent sessions run at once across all loops.

    Phase executors hold a slot only around a single Agent Runner call,
    never across retry backoff.
    """

    def __init__(self, max_sessions: int = 3) -> None:
        if max_sessions < 1:
            raise ValueError(f"max_sessions must be >= 1, got {max_sessions}")
        self._max_sessions = max_sessions
        self._semaphore = asyncio.Semaphore(max_sessions)
        self._active = 0

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> int:
        return self._max_sessions - self._active

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        if self._semaphore.locked():
            logger.debug(f"All {self._max_sessions} agent session slots busy, waiting")
        async with self._semaphore:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1
