"""Token, batch and context budgets for one generation request."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import GenerationSettings
from .errors import ContextOverflowError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextBudget:
    prompt_tokens: int
    max_new_tokens: int
    batch_size: int
    context_len: int
    n_threads: int

    @property
    def required(self) -> int:
        return self.prompt_tokens + self.max_new_tokens


def plan_context(prompt_tokens: int, settings: GenerationSettings) -> ContextBudget:
    """Size the inference context for a prompt of ``prompt_tokens`` tokens.

    The batch must hold the prompt plus every generated token, capped at the
    batch ceiling. Raises ContextOverflowError when prompt + max_new_tokens
    exceeds the context ceiling; nothing is allocated in that case.
    """
    if prompt_tokens < 0 or settings.max_new_tokens < 0:
        raise ValueError("token counts must be non-negative")

    required = prompt_tokens + settings.max_new_tokens
    if required > settings.context_ceiling:
        raise ContextOverflowError(required, settings.context_ceiling)

    budget = ContextBudget(
        prompt_tokens=prompt_tokens,
        max_new_tokens=settings.max_new_tokens,
        batch_size=min(required, settings.batch_ceiling),
        context_len=settings.context_ceiling,
        n_threads=settings.n_threads,
    )
    logger.info(
        "Total tokens required: %d, input tokens: %d, n_batch: %d",
        required, prompt_tokens, budget.batch_size,
    )
    return budget
