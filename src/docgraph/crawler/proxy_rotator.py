"""
Egress proxy rotation with per-proxy cooldown and exponential failure backoff.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from docgraph.observability import increment

logger = structlog.get_logger(__name__)


@dataclass
class ProxyState:
    """Runtime state of one proxy. Lives only for the process lifetime."""

    identifier: str
    fail_count: int = 0
    last_used: float = 0.0
    cooldown_until: Optional[float] = None

    def is_cooling_down(self, now: float) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now


class ProxyRotator:
    """
    Picks an egress proxy per request.

    Eligible proxies (not cooling down) are ordered by failure count, then by
    least recent use. Every selection puts the chosen proxy on a short
    cooldown; every reported failure puts it on a ``2^fail_count`` second
    cooldown, capped at ``max_cooldown``.
    """

    def __init__(
        self,
        proxies: Iterable[str],
        *,
        selection_cooldown: float,
        max_cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.selection_cooldown = selection_cooldown
        self.max_cooldown = max_cooldown
        self._clock = clock
        self._states: Dict[str, ProxyState] = {}
        for proxy in proxies:
            self._states.setdefault(proxy, ProxyState(identifier=proxy))
        self._lock = asyncio.Lock()

        if self._states:
            logger.info("Proxy rotation enabled", proxy_count=len(self._states))

    @property
    def proxies(self) -> List[str]:
        return list(self._states)

    def get_state(self, proxy: str) -> Optional[ProxyState]:
        return self._states.get(proxy)

    async def select_proxy(self) -> Optional[str]:
        """Return the best eligible proxy, or None for a direct connection."""
        if not self._states:
            return None

        async with self._lock:
            now = self._clock()
            eligible = [state for state in self._states.values() if not state.is_cooling_down(now)]
            if not eligible:
                logger.debug("All proxies cooling down", proxy_count=len(self._states))
                return None

            chosen = min(eligible, key=lambda state: (state.fail_count, state.last_used))
            chosen.last_used = now
            chosen.cooldown_until = now + self.selection_cooldown
            return chosen.identifier

    def failure_cooldown(self, fail_count: int) -> float:
        """Cooldown in seconds after the ``fail_count``-th failure."""
        # Bound the exponent before computing so huge counts stay cheap.
        exponent = min(fail_count, 62)
        return float(min(2**exponent, self.max_cooldown))

    async def report_failure(self, proxy: Optional[str]) -> None:
        """Increment the proxy's failure count and extend its cooldown."""
        if proxy is None:
            return

        async with self._lock:
            state = self._states.get(proxy)
            if state is None:
                logger.warning("Failure reported for unknown proxy", proxy=proxy)
                return

            state.fail_count += 1
            cooldown = self.failure_cooldown(state.fail_count)
            state.cooldown_until = self._clock() + cooldown

        increment("proxy_failures")
        logger.warning("Proxy entered cooldown", proxy=proxy, failures=state.fail_count, cooldown_seconds=cooldown)

    def get_stats(self) -> Dict[str, Any]:
        """Get current proxy statistics."""
        now = self._clock()
        return {
            "proxy_count": len(self._states),
            "proxies_in_cooldown": sum(1 for state in self._states.values() if state.is_cooling_down(now)),
            "failures": {proxy: state.fail_count for proxy, state in self._states.items() if state.fail_count},
        }
