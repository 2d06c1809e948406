"""Prefill + autoregressive decode loop over an :class:`InferenceBackend`.

One call to :meth:`Generator.generate` walks the request state machine::

    Init -> Prefill -> Decode* -> Completed(EOS) | Completed(MaxLen) | Error

Fatal failures raise a :class:`GenerationError` subclass. Tokens whose text
cannot be decoded are skipped. The generator is not re-entrant; callers must
serialize requests (see :mod:`chat_relay.serializer`).
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .backend import ContextParams, InferenceBackend, TokenBatch
from .config import GenerationSettings, SamplingSettings
from .errors import (
    ContextCreationError,
    DecodeError,
    GenerationError,
    TokenDecodeError,
    TokenizeError,
)
from .sampling import create_sampler
from .sizing import ContextBudget, plan_context
from .status import GenerationStatus

logger = logging.getLogger(__name__)

SEQ_ID = 0


class StopReason(enum.Enum):
    EOS = "eos"
    MAX_LEN = "max_len"


@dataclass(frozen=True)
class GenerationResult:
    text: str
    stop_reason: StopReason
    prompt_tokens: int
    n_decoded: int
    elapsed_s: float

    @property
    def tokens_per_second(self) -> float:
        return self.n_decoded / self.elapsed_s if self.elapsed_s > 0 else 0.0


class Generator:
    def __init__(
        self,
        backend: InferenceBackend,
        settings: Optional[GenerationSettings] = None,
        sampling: Optional[SamplingSettings] = None,
        *,
        status: Optional[GenerationStatus] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or GenerationSettings()
        self.sampling = sampling or SamplingSettings()
        self.status = status or GenerationStatus()

    def generate(self, prompt: str) -> GenerationResult:
        try:
            result = self._run(prompt)
        except GenerationError as e:
            self.status.fail(e)
            raise
        except Exception as e:
            self.status.fail(e)
            raise GenerationError(f"Generation failed: {e}") from e
        self.status.finish(result.n_decoded, result.tokens_per_second)
        return result

    # ----------------------------
    # Internals
    # ----------------------------
    def _run(self, prompt: str) -> GenerationResult:
        # Init
        try:
            tokens = self.backend.tokenize(prompt)
        except TokenizeError:
            raise
        except Exception as e:
            raise TokenizeError(f"Failed to tokenize prompt: {e}") from e

        budget = plan_context(len(tokens), self.settings)
        self.status.begin(budget.prompt_tokens)

        try:
            ctx = self.backend.new_context(
                ContextParams(
                    max_context_len=budget.context_len,
                    batch_size=budget.batch_size,
                    thread_count=budget.n_threads,
                )
            )
        except ContextCreationError:
            raise
        except Exception as e:
            raise ContextCreationError(f"Failed to create context: {e}") from e

        # Prefill
        batch = TokenBatch(capacity=max(budget.batch_size, len(tokens), 1))
        last_index = len(tokens) - 1
        for i, token in enumerate(tokens):
            self._add(batch, token, i, want_logits=i == last_index)
        self._decode(ctx, batch)

        # Decode loop
        sampler = create_sampler(self.sampling)
        limit = self._limit(budget)
        n_cur = batch.n_tokens
        n_decode = 0
        pieces = []
        stop = StopReason.MAX_LEN
        t_start = time.perf_counter()

        while n_cur < limit:
            if n_cur <= 0:
                raise GenerationError("No valid tokens for sampling.")

            token = sampler.sample(self._logits(ctx, batch.n_tokens - 1))
            sampler.accept(token)

            if self.backend.is_end_of_sequence(token):
                stop = StopReason.EOS
                break

            try:
                pieces.append(self.backend.token_to_text(token))
            except TokenDecodeError as e:
                logger.debug("Skipping invalid token %s: %s", token, e)

            batch.clear()
            self._add(batch, token, n_cur, want_logits=True)
            self._decode(ctx, batch)

            n_cur += 1
            n_decode += 1
            self.status.decoding(n_decode)

        elapsed = time.perf_counter() - t_start
        result = GenerationResult(
            text="".join(pieces),
            stop_reason=stop,
            prompt_tokens=budget.prompt_tokens,
            n_decoded=n_decode,
            elapsed_s=elapsed,
        )
        logger.info(
            "Decoded %d tokens in %.2fs, speed: %.2f t/s (stop=%s)",
            n_decode, elapsed, result.tokens_per_second, stop.value,
        )
        return result

    def _limit(self, budget: ContextBudget) -> int:
        if self.settings.limit_includes_prompt:
            return budget.max_new_tokens
        return budget.prompt_tokens + budget.max_new_tokens

    @staticmethod
    def _add(batch: TokenBatch, token: int, position: int, *, want_logits: bool) -> None:
        try:
            batch.add(token, position, SEQ_ID, want_logits)
        except ValueError as e:
            raise DecodeError(f"Failed to add token to batch: {e}") from e

    @staticmethod
    def _logits(ctx, index: int):
        try:
            return ctx.logits(index)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"Failed to read logits: {e}") from e

    @staticmethod
    def _decode(ctx, batch: TokenBatch) -> None:
        try:
            ctx.decode(batch)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"Failed to decode batch: {e}") from e
