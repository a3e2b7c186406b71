"""
Rate limiting and hard-block tracking for the external resolver.

The resolver is a metered API.  Calls are spaced at least
``min_interval`` seconds apart, and once the API refuses service the guard
stays blocked for the rest of the process so no further quota is burned.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from chromasync.errors import ResolverBlocked

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """
    Spacing and permanent-block flag for resolver calls.

    Args:
        min_interval: Minimum seconds between the starts of two calls.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last_call: Optional[float] = None
        self._blocked = False
        self._block_reason: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self._blocked

    @property
    def block_reason(self) -> Optional[str]:
        return self._block_reason

    def block(self, reason: str):
        if not self._blocked:
            logger.warning("Resolver blocked for the rest of this session: %s", reason)
        self._blocked = True
        self._block_reason = reason

    def reset(self):
        """Clear the block flag and the spacing history."""
        self._blocked = False
        self._block_reason = None
        self._last_call = None

    async def wait_turn(self) -> float:
        """
        Claim the next free slot, then sleep until it arrives.

        The slot is reserved before sleeping, so concurrent callers queue up
        ``min_interval`` apart instead of waking together.

        Returns:
            Seconds waited.
        """
        now = self.clock()
        slot = now
        if self._last_call is not None:
            slot = max(now, self._last_call + self.min_interval)
        self._last_call = slot

        waited = slot - now
        if waited > 0:
            logger.debug("Rate limiting: waiting %.2fs before resolver call", waited)
            await self.sleep(waited)
        return waited

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run ``await fn(*args, **kwargs)`` under the guard.

        Raises:
            ResolverBlocked: If the guard is already blocked, or the call
                itself reports a block (which then sets the flag).
        """
        if self._blocked:
            raise ResolverBlocked(self._block_reason or "resolver blocked")
        await self.wait_turn()
        # Another caller may have hit the block while we slept
        if self._blocked:
            raise ResolverBlocked(self._block_reason or "resolver blocked")
        try:
            return await fn(*args, **kwargs)
        except ResolverBlocked as exc:
            self.block(exc.reason)
            raise
