"""Per-client abuse guard: fixed rate window, strike counter, temporary lockout.

State lives behind AbuseStateStore. The in-memory store keeps everything
process-local, so a restart clears all counters; a shared key-value store
can be plugged in for multi-instance deployments.
"""

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Protocol

from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateWindow:
    count: int
    reset_at: float


@dataclass
class StrikeRecord:
    strikes: int = 0
    last_strike_at: float = 0.0
    locked_until: float | None = None


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    retry_after_seconds: int = 0


@dataclass(frozen=True)
class LockoutStatus:
    strikes: int
    locked_until: float | None = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None

    def locked_until_iso(self) -> str | None:
        if self.locked_until is None:
            return None
        return datetime.fromtimestamp(self.locked_until, tz=timezone.utc).isoformat()


class AbuseStateStore(Protocol):
    """Storage for rate windows and strike records keyed by client id."""

    def get_rate(self, client: str) -> RateWindow | None: ...

    def set_rate(self, client: str, window: RateWindow) -> None: ...

    def get_strikes(self, client: str) -> StrikeRecord | None: ...

    def set_strikes(self, client: str, record: StrikeRecord) -> None: ...

    def prune(self, now: float) -> int: ...


class InMemoryAbuseStore:
    """Process-local store. Suitable for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rates: dict[str, RateWindow] = {}
        self._strikes: dict[str, StrikeRecord] = {}

    def get_rate(self, client: str) -> RateWindow | None:
        with self._lock:
            return self._rates.get(client)

    def set_rate(self, client: str, window: RateWindow) -> None:
        with self._lock:
            self._rates[client] = window

    def get_strikes(self, client: str) -> StrikeRecord | None:
        with self._lock:
            return self._strikes.get(client)

    def set_strikes(self, client: str, record: StrikeRecord) -> None:
        with self._lock:
            self._strikes[client] = record

    def prune(self, now: float) -> int:
        """Drop expired rate windows and strike records that no longer hold state."""
        with self._lock:
            stale_rates = [c for c, w in self._rates.items() if w.reset_at < now]
            for client in stale_rates:
                del self._rates[client]
            stale_strikes = [
                c
                for c, r in self._strikes.items()
                if r.strikes == 0 or (r.locked_until is not None and r.locked_until <= now)
            ]
            for client in stale_strikes:
                del self._strikes[client]
            return len(stale_rates) + len(stale_strikes)

    def clear(self) -> None:
        with self._lock:
            self._rates.clear()
            self._strikes.clear()


class AbuseGuard:
    """
    Finite-state guard per client.

    States: open -> (strikes accumulate) -> locked -> (expiry observed on next
    access) -> open with zero strikes. The rate window is independent of
    strikes and resets every RATE_WINDOW_SECONDS.
    """

    def __init__(
        self,
        store: AbuseStateStore | None = None,
        clock: Callable[[], float] = time.time,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.store = store if store is not None else InMemoryAbuseStore()
        self.clock = clock
        self.window_seconds = settings.RATE_WINDOW_SECONDS
        self.rate_max = settings.RATE_MAX
        self.strike_limit = settings.STRIKE_LIMIT
        self.lockout_seconds = settings.LOCKOUT_SECONDS
        self._last_prune = clock()

    def check_lockout(self, client: str) -> LockoutStatus:
        """
        Report the client's strike state, resetting an expired lockout.

        Args:
            client: Client identifier

        Returns:
            LockoutStatus; locked_until is set only while the lockout is active
        """
        record = self.store.get_strikes(client)
        if record is None:
            return LockoutStatus(strikes=0)

        now = self.clock()
        if record.locked_until is not None:
            if now < record.locked_until:
                return LockoutStatus(strikes=record.strikes, locked_until=record.locked_until)
            self.store.set_strikes(client, StrikeRecord())
            logger.info(f"Lockout expired for client: {client}, strikes reset")
            return LockoutStatus(strikes=0)

        return LockoutStatus(strikes=record.strikes)

    def check_rate(self, client: str) -> RateDecision:
        """
        Count one request against the client's fixed window.

        Args:
            client: Client identifier

        Returns:
            RateDecision; when refused, retry_after_seconds is the remaining window
        """
        now = self.clock()
        window = self.store.get_rate(client)
        if window is None or now > window.reset_at:
            self._maybe_prune(now)
            self.store.set_rate(client, RateWindow(count=1, reset_at=now + self.window_seconds))
            return RateDecision(allowed=True, count=1)

        window.count += 1
        self.store.set_rate(client, window)
        if window.count > self.rate_max:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.warning(
                f"Rate limit exceeded for client: {client}, "
                f"count: {window.count}/{self.rate_max}, "
                f"retry after: {retry_after}s"
            )
            return RateDecision(allowed=False, count=window.count, retry_after_seconds=retry_after)

        return RateDecision(allowed=True, count=window.count)

    def _maybe_prune(self, now: float) -> None:
        # At most one sweep per rate window
        if now - self._last_prune < self.window_seconds:
            return
        self._last_prune = now
        removed = self.store.prune(now)
        if removed:
            logger.debug(f"Pruned {removed} stale abuse-guard entries")

    def add_strike(self, client: str) -> LockoutStatus:
        """
        Record one policy violation; reaching the limit starts a lockout.

        Args:
            client: Client identifier

        Returns:
            LockoutStatus after the strike
        """
        now = self.clock()
        record = self.store.get_strikes(client) or StrikeRecord()
        record.strikes += 1
        record.last_strike_at = now
        if record.strikes >= self.strike_limit:
            record.locked_until = now + self.lockout_seconds
            logger.warning(f"Client locked out: {client}, strikes: {record.strikes}")
        self.store.set_strikes(client, record)
        return LockoutStatus(strikes=record.strikes, locked_until=record.locked_until)

    def minutes_left(self, status: LockoutStatus) -> int:
        if status.locked_until is None:
            return 0
        return max(1, math.ceil((status.locked_until - self.clock()) / 60))


def client_identifier(headers: Mapping[str, str], peer: str | None) -> str:
    """
    Derive the client key from forwarding headers, falling back to the socket peer.

    Args:
        headers: Request headers (case-insensitive mapping)
        peer: Socket peer address, if known

    Returns:
        Client identifier string
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"
