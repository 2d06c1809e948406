"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.backend import ContextParams, TokenBatch  # noqa: E402
from chat_relay.errors import DecodeError, TokenDecodeError, TokenizeError  # noqa: E402

VOCAB = 16
EOS = 0


def one_hot(token: int, vocab: int = VOCAB, peak: float = 50.0) -> np.ndarray:
    logits = np.zeros(vocab, dtype=np.float32)
    logits[token] = peak
    return logits


class FakeContext:
    def __init__(self, backend: "FakeBackend", params: ContextParams) -> None:
        self.backend = backend
        self.params = params
        self.batches: List[Tuple[List[int], List[int], List[bool]]] = []

    def decode(self, batch: TokenBatch) -> None:
        n = len(self.batches)
        if self.backend.fail_decode_at is not None and n == self.backend.fail_decode_at:
            raise DecodeError("scripted decode failure")
        if self.backend.decode_delay:
            start = time.perf_counter()
            time.sleep(self.backend.decode_delay)
            with self.backend.lock:
                self.backend.windows.append((start, time.perf_counter()))
        self.batches.append((list(batch.tokens), list(batch.positions), list(batch.logits)))

    def logits(self, index: int) -> np.ndarray:
        step = len(self.batches) - 1
        script = self.backend.script
        if step < len(script):
            entry = script[step]
            return entry if isinstance(entry, np.ndarray) else one_hot(entry)
        return one_hot(EOS)


class FakeBackend:
    """Scripted engine: step ``i`` of the decode loop samples ``script[i]``.

    Tokens map to text through ``vocab``; EOS is token 0. Once the script is
    exhausted every further step yields EOS.
    """

    def __init__(
        self,
        script: Iterable = (),
        *,
        vocab: Optional[Dict[int, str]] = None,
        prompt_tokens: Optional[int] = None,
        bad_tokens: Iterable[int] = (),
        fail_tokenize: bool = False,
        fail_decode_at: Optional[int] = None,
        decode_delay: float = 0.0,
    ) -> None:
        self.script = list(script)
        self.vocab = vocab or {i: f"w{i} " for i in range(1, VOCAB)}
        self.prompt_tokens = prompt_tokens
        self.bad_tokens = set(bad_tokens)
        self.fail_tokenize = fail_tokenize
        self.fail_decode_at = fail_decode_at
        self.decode_delay = decode_delay
        self.prompts: List[str] = []
        self.contexts: List[FakeContext] = []
        self.windows: List[Tuple[float, float]] = []
        self.lock = threading.Lock()

    def tokenize(self, text: str) -> List[int]:
        if self.fail_tokenize:
            raise TokenizeError("scripted tokenize failure")
        self.prompts.append(text)
        n = self.prompt_tokens if self.prompt_tokens is not None else len(text.split()) + 1
        return [(i % (VOCAB - 1)) + 1 for i in range(n)]

    def new_context(self, params: ContextParams) -> FakeContext:
        ctx = FakeContext(self, params)
        self.contexts.append(ctx)
        return ctx

    def is_end_of_sequence(self, token: int) -> bool:
        return token == EOS

    def token_to_text(self, token: int) -> str:
        if token in self.bad_tokens:
            raise TokenDecodeError(f"invalid token {token}")
        return self.vocab[token]


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("CHAT_RELAY_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_RELAY__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def fake_backend():
    """Factory for scripted backends."""
    return FakeBackend
