"""Inference engine surface and its llama.cpp (GGUF) implementation.

The generation loop only talks to :class:`InferenceBackend` and
:class:`InferenceContext`. :class:`LlamaCppBackend` provides them on top of
:mod:`llama_cpp`; tests provide scripted fakes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import numpy as np

from .errors import ContextCreationError, DecodeError, TokenDecodeError, TokenizeError

logger = logging.getLogger(__name__)


# -----------------------------
# Types
# -----------------------------

@dataclass(frozen=True)
class ContextParams:
    max_context_len: int
    batch_size: int
    thread_count: int


@dataclass
class TokenBatch:
    """Scratch buffer of tokens submitted in one decode call.

    Owned by a single request and reused across decode steps via ``clear``.
    """

    capacity: int
    tokens: List[int] = field(default_factory=list)
    positions: List[int] = field(default_factory=list)
    seq_ids: List[int] = field(default_factory=list)
    logits: List[bool] = field(default_factory=list)

    @property
    def n_tokens(self) -> int:
        return len(self.tokens)

    def add(self, token: int, position: int, seq_id: int = 0, want_logits: bool = False) -> None:
        if len(self.tokens) >= self.capacity:
            raise ValueError(f"batch is full ({self.capacity} tokens)")
        self.tokens.append(int(token))
        self.positions.append(int(position))
        self.seq_ids.append(int(seq_id))
        self.logits.append(bool(want_logits))

    def clear(self) -> None:
        self.tokens.clear()
        self.positions.clear()
        self.seq_ids.clear()
        self.logits.clear()


class InferenceContext(Protocol):
    def decode(self, batch: TokenBatch) -> None:
        """Run the model over ``batch``; raises DecodeError on failure."""

    def logits(self, index: int) -> np.ndarray:
        """Logits for the ``index``-th token of the last decoded batch."""


class InferenceBackend(Protocol):
    def tokenize(self, text: str) -> List[int]:
        ...

    def new_context(self, params: ContextParams) -> InferenceContext:
        ...

    def is_end_of_sequence(self, token: int) -> bool:
        ...

    def token_to_text(self, token: int) -> str:
        ...


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# llama.cpp implementation
# -----------------------------

class LlamaCppContext:
    """Per-request view over the single llama.cpp context of a loaded model."""

    def __init__(self, llama: Any) -> None:
        self._llama = llama
        self._last_positions: List[int] = []
        self._last_logits: List[bool] = []

    def decode(self, batch: TokenBatch) -> None:
        if batch.n_tokens == 0:
            raise DecodeError("cannot decode an empty batch")
        expected = int(self._llama.n_tokens)
        if batch.positions[0] != expected:
            raise DecodeError(
                f"non-contiguous batch: starts at {batch.positions[0]}, context at {expected}"
            )
        try:
            self._llama.eval(list(batch.tokens))
        except Exception as e:
            raise DecodeError(f"Failed to decode batch: {e}") from e
        self._last_positions = list(batch.positions)
        self._last_logits = list(batch.logits)

    def logits(self, index: int) -> np.ndarray:
        if not self._last_positions:
            raise DecodeError("no batch has been decoded")
        if not self._last_logits[index]:
            raise DecodeError(f"logits were not requested for batch index {index}")
        row = self._last_positions[index]
        return np.array(self._llama.scores[row], copy=True)


class LlamaCppBackend:
    """Thin wrapper around :mod:`llama_cpp` exposing the decode surface."""

    def __init__(self, model_path: str, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
              - use_mlock: keep weights resident, default True
              - n_ctx / n_batch: upper bounds for every request context
        """
        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if "n_gpu_layers" not in kwargs or kwargs["n_gpu_layers"] is None:
            try:
                kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0
            except Exception:
                kwargs["n_gpu_layers"] = 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs["use_mlock"] = _bool(kwargs.get("use_mlock", True), True)
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if use_mmap:
                # Retry without mmap on network filesystems / Windows oddities.
                logger.warning("mmap load failed, retrying without mmap: %s", e)
                kwargs["use_mmap"] = False
                self._llama = Llama(model_path=model_path, **kwargs)
            else:
                raise

        self._max_batch = int(self._llama.n_batch)
        self._eos = int(self._llama.token_eos())

    def tokenize(self, text: str) -> List[int]:
        try:
            return list(self._llama.tokenize(text.encode("utf-8"), add_bos=True))
        except Exception as e:
            raise TokenizeError(f"Failed to tokenize prompt: {e}") from e

    def new_context(self, params: ContextParams) -> LlamaCppContext:
        n_ctx = int(self._llama.n_ctx())
        if params.max_context_len > n_ctx:
            raise ContextCreationError(
                f"Failed to create context: requested n_ctx={params.max_context_len} "
                f"> loaded n_ctx={n_ctx}"
            )
        if params.batch_size < 1:
            raise ContextCreationError("Failed to create context: batch size must be >= 1")
        # Drop any cached state from the previous request.
        self._llama.reset()
        self._llama.n_batch = min(params.batch_size, self._max_batch)
        return LlamaCppContext(self._llama)

    def is_end_of_sequence(self, token: int) -> bool:
        return int(token) == self._eos

    def token_to_text(self, token: int) -> str:
        try:
            return self._llama.detokenize([int(token)]).decode("utf-8")
        except Exception as e:
            raise TokenDecodeError(f"invalid token {token}: {e}") from e


# -----------------------------
# Convenience factory
# -----------------------------

def create_backend_from_config(cfg: Dict[str, Any]) -> LlamaCppBackend:
    """Create LlamaCppBackend from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    gen_cfg = (cfg or {}).get("generation", {}) if isinstance(cfg, dict) else {}
    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    params: Dict[str, Optional[Any]] = {
        "n_ctx": gen_cfg.get("context_ceiling", 32768),
        "n_batch": gen_cfg.get("batch_ceiling", 4096),
        "n_threads": gen_cfg.get("n_threads"),
        "n_gpu_layers": model_cfg.get("n_gpu_layers"),
        "use_mlock": model_cfg.get("use_mlock", True),
        "use_mmap": model_cfg.get("use_mmap", True),
    }
    # Remove None entries (llama.cpp is picky)
    params = {k: v for k, v in params.items() if v is not None}

    logger.info("Loading model %s", model_path)
    return LlamaCppBackend(model_path=model_path, **params)
