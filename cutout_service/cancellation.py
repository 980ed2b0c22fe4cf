"""Cooperative cancellation checked between pipeline stages."""

from __future__ import annotations

import threading
from typing import Optional

from .errors import PipelineCancelledError


class CancellationToken:
    """Thread-safe flag a caller flips to abandon an in-flight request."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "superseded") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(f"cancelled before {stage}: {self._reason}")
