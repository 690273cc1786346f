"""In-memory tracker of failed guest payment token attempts.

Counts invalid tokens per client IP inside a fixed window that opens at the
first failure. A client that reaches the limit is locked out until the window
lapses, which stops brute-force guessing of payment links without touching
the order store.

In-memory storage suits a single-instance deployment, matching the slowapi
limiter. The instance lives on ``app.state`` and is handed to the guest
session gate per request.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from guest_checkout.services.token_store import Clock, utcnow

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_MINUTES = 15

# Bound on tracked clients. Lapsed windows go first, then the oldest ones.
DEFAULT_MAX_TRACKED_CLIENTS = 10_000


@dataclass
class _AttemptWindow:
    """Failures recorded for one client inside the current window."""

    count: int = 0
    started_at: datetime = field(default_factory=utcnow)


class FailedAttemptTracker:
    """Per-client failure counter with a fixed lockout window.

    The window starts at the first failure and lasts ``window`` regardless of
    later failures; after it lapses the count starts over.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        exempt_prefixes: tuple[str, ...] = (),
        clock: Clock = utcnow,
        max_tracked_clients: int = DEFAULT_MAX_TRACKED_CLIENTS,
    ) -> None:
        """Initialize the tracker.

        Args:
            max_attempts: Failures allowed before lockout.
            window_minutes: Length of the counting window.
            exempt_prefixes: Client IP prefixes never tracked (e.g. a
                trusted internal network).
            clock: Time source.
            max_tracked_clients: Most clients held in memory at once.
        """
        self._windows: dict[str, _AttemptWindow] = {}
        self._max_attempts = max_attempts
        self._window = timedelta(minutes=window_minutes)
        self._exempt_prefixes = exempt_prefixes
        self._clock = clock
        self._max_tracked_clients = max_tracked_clients

    def is_locked(self, client: str) -> bool:
        """True while the client has reached the failure limit."""
        window = self._current(client)
        return window is not None and window.count >= self._max_attempts

    def record_failure(self, client: str) -> int:
        """Count a failed attempt.

        Returns:
            Failures in the current window (0 for exempt clients).
        """
        if self._is_exempt(client):
            return 0
        window = self._current(client)
        if window is None:
            if len(self._windows) >= self._max_tracked_clients:
                self.cleanup_expired()
            if len(self._windows) >= self._max_tracked_clients:
                self._evict_oldest()
            window = _AttemptWindow(started_at=self._clock())
            self._windows[client] = window
        window.count += 1
        return window.count

    def reset(self, client: str) -> None:
        """Forget a client's failures (after a successful attempt)."""
        self._windows.pop(client, None)

    def cleanup_expired(self) -> int:
        """Drop windows that have lapsed.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [
            client
            for client, window in self._windows.items()
            if now >= window.started_at + self._window
        ]
        for client in expired:
            del self._windows[client]
        return len(expired)

    def clear(self) -> None:
        """Forget everything (for testing)."""
        self._windows.clear()

    def _evict_oldest(self) -> None:
        oldest = min(self._windows, key=lambda client: self._windows[client].started_at)
        del self._windows[oldest]

    def _is_exempt(self, client: str) -> bool:
        return any(client.startswith(prefix) for prefix in self._exempt_prefixes)

    def _current(self, client: str) -> _AttemptWindow | None:
        window = self._windows.get(client)
        if window is None:
            return None
        if self._clock() >= window.started_at + self._window:
            del self._windows[client]
            return None
        return window
