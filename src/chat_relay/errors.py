"""Exception taxonomy for the generation pipeline.

Fatal errors abort the current request only. Non-fatal ones are raised by
collaborators and absorbed by the caller (a link stays unannotated, a token
fragment is skipped).
"""

from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for every error raised by chat_relay."""


# -----------------------------
# Fatal (abort current request)
# -----------------------------

class GenerationError(ChatRelayError):
    """A request failed and produced no reply."""


class TokenizeError(GenerationError):
    pass


class ContextCreationError(GenerationError):
    pass


class DecodeError(GenerationError):
    pass


class ContextOverflowError(GenerationError):
    """Prompt plus generation budget does not fit in the context ceiling."""

    def __init__(self, required: int, ceiling: int) -> None:
        super().__init__(
            f"context overflow: {required} tokens required > ceiling {ceiling}. "
            "Reduce max_new_tokens or shorten the prompt."
        )
        self.required = required
        self.ceiling = ceiling


# -----------------------------
# Non-fatal (degrade gracefully)
# -----------------------------

class FetchError(ChatRelayError):
    pass


class ParseError(ChatRelayError):
    pass


class TokenDecodeError(ChatRelayError):
    pass
