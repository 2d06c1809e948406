"""Token samplers operating on a logits vector.

Two strategies, exactly one active per request:

- ``MirostatSampler``: Mirostat 2.0 (https://arxiv.org/abs/2007.14966). Keeps
  the surprise of generated tokens near ``tau`` by truncating candidates whose
  surprise exceeds a running threshold ``mu`` and nudging ``mu`` after every
  accepted token.
- ``ChainSampler``: temperature -> top-k -> top-p -> repetition penalty ->
  greedy pick.

Samplers are stateful and belong to one request. Create a fresh one per
request with :func:`create_sampler`.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional, Protocol, Tuple

import numpy as np

from .config import SamplingSettings


class Sampler(Protocol):
    def sample(self, logits: np.ndarray) -> int:
        ...

    def accept(self, token: int) -> None:
        ...


def _softmax(x: np.ndarray) -> np.ndarray:
    z = x - np.max(x)
    e = np.exp(z)
    return e / e.sum()


# -----------------------------
# Mirostat v2
# -----------------------------
class MirostatSampler:
    def __init__(self, tau: float = 5.0, eta: float = 0.1, seed: int = 42) -> None:
        self.tau = float(tau)
        self.eta = float(eta)
        self.mu = 2.0 * self.tau
        self._rng = np.random.default_rng(seed)
        self._pending: Optional[Tuple[int, float]] = None

    def sample(self, logits: np.ndarray) -> int:
        scores = np.asarray(logits, dtype=np.float64).ravel()
        if scores.size == 0:
            raise ValueError("empty logits")

        order = np.argsort(-scores, kind="stable")
        probs = _softmax(scores[order])
        with np.errstate(divide="ignore"):
            surprise = -np.log2(probs)

        # Sorted by probability, so surprise is non-decreasing; keep at least one.
        keep = max(1, int(np.count_nonzero(surprise <= self.mu)))
        kept = probs[:keep] / probs[:keep].sum()

        idx = int(self._rng.choice(keep, p=kept))
        token = int(order[idx])
        self._pending = (token, float(-np.log2(kept[idx])))
        return token

    def accept(self, token: int) -> None:
        if self._pending is None or self._pending[0] != token:
            return
        observed = self._pending[1]
        self._pending = None
        self.mu = self.mu - self.eta * (observed - self.tau)


# -----------------------------
# Filter chain
# -----------------------------
class ChainSampler:
    def __init__(
        self,
        temperature: float = 0.7,
        top_k: int = 50,
        top_p: float = 0.9,
        penalty_last_n: int = 64,
        repeat_penalty: float = 1.2,
        min_keep: int = 1,
    ) -> None:
        self.temperature = float(temperature)
        self.top_k = int(top_k)
        self.top_p = float(top_p)
        self.repeat_penalty = float(repeat_penalty)
        self.min_keep = max(1, int(min_keep))
        self.recent: Deque[int] = deque(maxlen=max(0, int(penalty_last_n)))

    def sample(self, logits: np.ndarray) -> int:
        scores = np.asarray(logits, dtype=np.float64).ravel()
        if scores.size == 0:
            raise ValueError("empty logits")

        cand = np.arange(scores.size)
        vals = scores.copy()

        # temperature
        if self.temperature <= 0:
            return int(np.argmax(scores))
        vals = vals / self.temperature

        # top-k (leaves candidates sorted by score)
        order = np.argsort(-vals, kind="stable")
        if 0 < self.top_k < order.size:
            order = order[: max(self.top_k, self.min_keep)]
        cand, vals = cand[order], vals[order]

        # top-p
        if self.top_p < 1.0:
            cum = np.cumsum(_softmax(vals))
            keep = int(np.searchsorted(cum, self.top_p)) + 1
            keep = min(max(keep, self.min_keep), cand.size)
            cand, vals = cand[:keep], vals[:keep]

        # repetition penalty
        if self.repeat_penalty != 1.0 and self.recent:
            penalized = np.isin(cand, np.fromiter(set(self.recent), dtype=cand.dtype))
            vals = np.where(
                penalized,
                np.where(vals > 0, vals / self.repeat_penalty, vals * self.repeat_penalty),
                vals,
            )

        # greedy
        return int(cand[int(np.argmax(vals))])

    def accept(self, token: int) -> None:
        self.recent.append(int(token))


def create_sampler(settings: SamplingSettings) -> Sampler:
    """Build a fresh sampler for one request."""
    if settings.strategy == "mirostat":
        return MirostatSampler(tau=settings.tau, eta=settings.eta, seed=settings.seed)
    if settings.strategy == "chain":
        return ChainSampler(
            temperature=settings.temperature,
            top_k=settings.top_k,
            top_p=settings.top_p,
            penalty_last_n=settings.penalty_last_n,
            repeat_penalty=settings.repeat_penalty,
        )
    raise ValueError(f"Unknown sampling strategy: {settings.strategy!r}")
