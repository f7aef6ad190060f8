"""Fixed-window admission control keyed by client address.

Counters live in the memory of one worker process and are never shared. The
OS spreads a client's connections over all workers, so the effective limit per
client is up to ``num_workers * max_requests`` per window.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from .common.metrics import GLOBAL_REGISTRY, Counter, Gauge

LOGGER = structlog.get_logger("edgeproxy.admission")

DENIED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeproxy_admission_denied_total", "Requests rerouted to the overflow origin")
)


@dataclass
class AdmissionWindow:
    count: int
    window_start: float


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    count: int
    retry_after: int


def client_key_for(client_ip: str) -> str:
    return f"ip_{client_ip}"


class AdmissionController:
    """Per-process fixed-window request counter."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max(0, max_requests)
        self._window_seconds = float(window_seconds)
        self._clock = clock
        self._windows: dict[str, AdmissionWindow] = {}
        self.tracked_gauge = GLOBAL_REGISTRY.register(
            Gauge("edgeproxy_admission_windows", "Client windows tracked by this worker", supplier=self.__len__)
        )

    def __len__(self) -> int:
        return len(self._windows)

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def admit(self, client_key: str) -> AdmissionDecision:
        now = self._clock()
        window = self._windows.get(client_key)
        if window is None or now - window.window_start >= self._window_seconds:
            window = AdmissionWindow(count=0, window_start=now)
            self._windows[client_key] = window
        window.count += 1

        remaining = self._window_seconds - (now - window.window_start)
        decision = AdmissionDecision(
            allowed=window.count <= self._max_requests,
            count=window.count,
            retry_after=max(1, math.ceil(remaining)),
        )
        if not decision.allowed:
            DENIED_COUNTER.inc()
            LOGGER.warning(
                "admission_denied",
                key=client_key,
                current=window.count,
                limit=self._max_requests,
                window=self._window_seconds,
            )
        return decision

    def sweep(self) -> int:
        """Forget windows that have expired. Returns how many were dropped."""
        now = self._clock()
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.window_start >= self._window_seconds
        ]
        for key in expired:
            del self._windows[key]
        if expired:
            LOGGER.debug("admission_windows_swept", dropped=len(expired), remaining=len(self._windows))
        return len(expired)

    def reset(self, client_key: str) -> None:
        self._windows.pop(client_key, None)
