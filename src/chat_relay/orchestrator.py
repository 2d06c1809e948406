"""Request pipeline: links -> history -> prompt -> generation -> chunks."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .chunker import split_message
from .config import HistorySettings
from .errors import GenerationError
from .generation import GenerationResult, Generator
from .history import ChatHistory, Message
from .links import LinkAugmenter
from .prompt import build_prompt
from .serializer import RequestSerializer

logger = logging.getLogger(__name__)

FAILURE_REPLY = "Error generating response."


@dataclass
class AskReply:
    text: str
    chunks: List[str] = field(default_factory=list)
    ok: bool = True
    result: Optional[GenerationResult] = None


def frame_reply(author: str, question: str, response: str) -> str:
    return f"**{author} asked:** {question}\n\n**AI Response:** {response}"


class ChatOrchestrator:
    """Owns the session state and runs one question at a time."""

    def __init__(
        self,
        generator: Generator,
        *,
        history_settings: Optional[HistorySettings] = None,
        augmenter: Optional[LinkAugmenter] = None,
        serializer: Optional[RequestSerializer] = None,
        max_message_length: int = 2000,
    ) -> None:
        self.generator = generator
        self.settings = history_settings or HistorySettings()
        self.augmenter = augmenter or LinkAugmenter()
        self.serializer = serializer or RequestSerializer()
        self.max_message_length = max_message_length
        self.history = ChatHistory(self.settings.window)
        self._install_directive(self.settings.directive)

    # --------- commands ----------
    async def ask(self, question: str, author: Optional[str] = None) -> AskReply:
        question = (question or "").strip()
        if not question:
            raise ValueError("question cannot be empty")

        async with self.serializer.hold():
            prompt_text = await self.augmenter.augment(question)
            logger.debug("Processed prompt: %s", prompt_text)

            user_turn = Message.user(prompt_text)
            self.history.append(user_turn)
            prompt = build_prompt(self._prompt_directive(), self.history.snapshot())

            try:
                result = await asyncio.to_thread(self.generator.generate, prompt)
            except GenerationError as e:
                logger.error("Error generating response: %s", e)
                if self.settings.rollback_on_failure:
                    self.history.discard_last(user_turn)
                return self._reply(FAILURE_REPLY, question, author, ok=False)

            if result.text:
                self.history.append(Message.assistant(result.text))
            return self._reply(result.text, question, author, result=result)

    async def set_mission(self, mission: str) -> None:
        mission = (mission or "").strip()
        if not mission:
            raise ValueError("mission cannot be empty")
        async with self.serializer.hold():
            self._install_directive(mission)
        logger.info("Updated system prompt: %s", mission)

    async def reset(self) -> None:
        async with self.serializer.hold():
            self._install_directive(self.settings.directive)
        logger.info("Chat history has been reset.")

    def snapshot(self) -> List[Message]:
        return self.history.snapshot()

    @property
    def directive(self) -> str:
        return self.history.directive

    # --------- internals ----------
    def _install_directive(self, directive: str) -> None:
        if self.settings.directive_placement == "seed":
            seed = Message.system(directive) if directive else None
            self.history.reset(seed, directive=directive)
        else:
            self.history.reset(directive=directive)

    def _prompt_directive(self) -> str:
        # In "seed" mode the directive lives in the history entries instead.
        if self.settings.directive_placement == "seed":
            return ""
        return self.history.directive

    def _reply(
        self,
        response: str,
        question: str,
        author: Optional[str],
        *,
        ok: bool = True,
        result: Optional[GenerationResult] = None,
    ) -> AskReply:
        text = frame_reply(author, question, response) if author else response
        return AskReply(
            text=text,
            chunks=split_message(text, self.max_message_length),
            ok=ok,
            result=result,
        )
