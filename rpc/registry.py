# pylint: disable=broad-exception-caught
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from rpc.errors import TimeExpired


MIN_SWEEP_INTERVAL = 1


def sweep_interval(ttl):
    """Seconds between expiry sweeps for a given ttl"""
    return max(MIN_SWEEP_INTERVAL, ttl / 5)


@dataclass
class PendingCall:
    """An outstanding request waiting for its correlated reply"""

    correlation_id: str
    ttl: float
    resolve: Callable
    reject: Callable
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now):
        return self.ttl > 0 and now - self.created_at > self.ttl


class RegistrySweeper(threading.Thread):
    """Periodically expires pending calls whose ttl elapsed"""

    def __init__(self, registry, interval):
        super().__init__(name="PendingCallRegistry-Sweeper", daemon=True)
        self.registry = registry
        self.interval = interval
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self.logger = logging.getLogger(__name__)

    def run(self):
        self.logger.debug(
            "action: sweeper_start | result: success | interval: %s", self.interval
        )
        while not self._stop_event.is_set():
            woken = self._wake_event.wait(self.interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            if woken:
                # interval changed, restart the wait with the new one
                continue
            try:
                self.registry.sweep()
            except Exception as e:
                self.logger.error("action: sweep | result: fail | error: %s", e)

    def set_interval(self, interval):
        self.interval = interval
        self._wake_event.set()

    def stop(self):
        self._stop_event.set()
        self._wake_event.set()


class PendingCallRegistry:
    """
    Outstanding calls of one RPC client, keyed by correlation id.

    `take` is the only way an entry leaves the registry, both for reply
    matching and for expiry, so whichever comes first settles the call and
    the other one finds nothing.
    """

    def __init__(self, default_ttl=0, clock=time.monotonic, start_sweeper=True):
        self.default_ttl = default_ttl or 0
        self._clock = clock
        self._start_sweeper = start_sweeper
        self._entries: Dict[str, PendingCall] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[RegistrySweeper] = None
        self.logger = logging.getLogger(__name__)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, correlation_id):
        with self._lock:
            return correlation_id in self._entries

    def effective_ttl(self, ttl=None):
        return self.default_ttl if ttl is None else ttl

    def register(self, correlation_id, ttl, resolve, reject):
        """
        Track a new call. `ttl` of None uses the registry default, 0 never expires.
        """
        ttl = self.effective_ttl(ttl)
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")

        call = PendingCall(
            correlation_id=correlation_id,
            ttl=ttl,
            resolve=resolve,
            reject=reject,
            created_at=self._clock(),
        )
        with self._lock:
            if correlation_id in self._entries:
                raise ValueError(f"correlation id {correlation_id} already pending")
            self._entries[correlation_id] = call

        if ttl > 0:
            self._ensure_sweeper(ttl)
        return call

    def take(self, correlation_id) -> Optional[PendingCall]:
        """Remove and return the pending call, None if already settled or unknown"""
        with self._lock:
            return self._entries.pop(correlation_id, None)

    def sweep(self):
        """Reject every call whose ttl elapsed with TimeExpired, returns how many"""
        now = self._clock()
        with self._lock:
            expired = [
                correlation_id
                for correlation_id, call in self._entries.items()
                if call.is_expired(now)
            ]

        count = 0
        for correlation_id in expired:
            call = self.take(correlation_id)
            if call is None:
                continue
            self.logger.warning(
                "action: rpc_call_expired | result: fail | correlation_id: %s | ttl: %s",
                correlation_id,
                call.ttl,
            )
            call.reject(TimeExpired(correlation_id, call.ttl))
            count += 1
        return count

    def _ensure_sweeper(self, ttl):
        if not self._start_sweeper:
            return
        interval = sweep_interval(ttl)
        with self._lock:
            if self._sweeper is None:
                self._sweeper = RegistrySweeper(self, interval)
                self._sweeper.start()
            elif interval < self._sweeper.interval:
                self._sweeper.set_interval(interval)

    def close(self):
        """Stop the sweeper; calls still pending are left untouched"""
        with self._lock:
            sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.stop()
