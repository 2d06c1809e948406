"""Shared, lock-protected view of what the generation worker is doing."""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional


class GenerationStatus:
    """Written by the decode thread, read by the HTTP status route."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = "idle"
        self._prompt_tokens = 0
        self._n_decoded = 0
        self._started_at: Optional[float] = None
        self._served = 0
        self._failed = 0
        self._last_error: Optional[str] = None
        self._last_tokens_per_second: Optional[float] = None

    def begin(self, prompt_tokens: int) -> None:
        with self._lock:
            self._phase = "prefill"
            self._prompt_tokens = prompt_tokens
            self._n_decoded = 0
            self._started_at = time.time()

    def decoding(self, n_decoded: int) -> None:
        with self._lock:
            self._phase = "decode"
            self._n_decoded = n_decoded

    def finish(self, n_decoded: int, tokens_per_second: float) -> None:
        with self._lock:
            self._phase = "idle"
            self._n_decoded = n_decoded
            self._served += 1
            self._last_tokens_per_second = tokens_per_second
            self._started_at = None

    def fail(self, error: BaseException) -> None:
        with self._lock:
            self._phase = "idle"
            self._failed += 1
            self._last_error = f"{type(error).__name__}: {error}"
            self._started_at = None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "phase": self._phase,
                "prompt_tokens": self._prompt_tokens,
                "n_decoded": self._n_decoded,
                "started_at": self._started_at,
                "requests_served": self._served,
                "requests_failed": self._failed,
                "last_error": self._last_error,
                "last_tokens_per_second": self._last_tokens_per_second,
            }
