from __future__ import annotations

import asyncio

import httpx
import numpy as np
import pytest

from chat_relay.config import GenerationSettings, HistorySettings, LinkSettings
from chat_relay.generation import Generator
from chat_relay.history import Message, Role
from chat_relay.links import LinkAugmenter
from chat_relay.orchestrator import FAILURE_REPLY, ChatOrchestrator


def _orch(backend, **history) -> ChatOrchestrator:
    settings = HistorySettings(**{"directive": "Be helpful.", **history})
    return ChatOrchestrator(Generator(backend), history_settings=settings)


def test_ask_records_both_turns(fake_backend):
    backend = fake_backend([1, 2, 0], prompt_tokens=3)
    orch = _orch(backend)

    reply = asyncio.run(orch.ask("  What is up?  "))
    assert reply.ok
    assert reply.text == "w1 w2 "
    assert reply.chunks == ["w1 w2 "]
    assert orch.snapshot() == [Message.user("What is up?"), Message.assistant("w1 w2 ")]
    assert backend.prompts[0] == "System: Be helpful.\nUser: What is up?\nAssistant:"


def test_second_prompt_contains_first_exchange(fake_backend):
    backend = fake_backend([3, 0], prompt_tokens=3)
    orch = _orch(backend)
    asyncio.run(orch.ask("Hi there"))
    asyncio.run(orch.ask("How are you?"))
    assert backend.prompts[1].split("\n") == [
        "System: Be helpful.",
        "User: Hi there",
        "Assistant: w3 ",
        "User: How are you?",
        "Assistant:",
    ]


def test_fatal_error_rolls_back_user_turn(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=2, fail_decode_at=0)
    orch = _orch(backend)
    reply = asyncio.run(orch.ask("boom"))
    assert not reply.ok
    assert reply.text == FAILURE_REPLY
    assert orch.snapshot() == []


def test_fatal_error_can_keep_user_turn(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=2, fail_tokenize=True)
    orch = _orch(backend, rollback_on_failure=False)
    reply = asyncio.run(orch.ask("boom"))
    assert not reply.ok
    assert orch.snapshot() == [Message.user("boom")]


def test_context_overflow_is_user_visible_failure(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=50)
    gen = Generator(backend, GenerationSettings(max_new_tokens=20, context_ceiling=64))
    orch = ChatOrchestrator(gen, history_settings=HistorySettings(directive=""))
    reply = asyncio.run(orch.ask("too long"))
    assert reply.text == FAILURE_REPLY
    assert backend.contexts == []


def test_empty_output_is_not_recorded(fake_backend):
    backend = fake_backend([0], prompt_tokens=2)
    orch = _orch(backend)
    reply = asyncio.run(orch.ask("anything"))
    assert reply.ok
    assert reply.text == ""
    assert reply.chunks == []
    assert orch.snapshot() == [Message.user("anything")]


def test_author_banner_and_chunking(fake_backend):
    backend = fake_backend([1] * 40 + [0], prompt_tokens=2)
    gen = Generator(backend)
    orch = ChatOrchestrator(gen, history_settings=HistorySettings(directive="d"), max_message_length=30)
    reply = asyncio.run(orch.ask("why?", author="sam"))
    assert reply.text.startswith("**sam asked:** why?\n\n**AI Response:** w1 w1")
    assert len(reply.chunks) > 1
    assert all(len(c) <= 30 for c in reply.chunks)
    # history holds the plain answer, not the banner
    assert orch.snapshot()[-1].content == "w1 " * 40


def test_links_are_inlined_before_history(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=2)
    augmenter = LinkAugmenter(
        LinkSettings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<h2>Docs</h2>")),
    )
    orch = ChatOrchestrator(Generator(backend), augmenter=augmenter)
    asyncio.run(orch.ask("summarize https://docs.test/page"))
    assert orch.snapshot()[0].content == "summarize https://docs.test/page (Content: Docs)"


def test_mission_and_reset(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=2)
    orch = _orch(backend)
    asyncio.run(orch.ask("q"))

    asyncio.run(orch.set_mission("Talk like a pirate."))
    assert orch.directive == "Talk like a pirate."
    assert orch.snapshot() == []
    asyncio.run(orch.ask("q2"))
    assert backend.prompts[-1].startswith("System: Talk like a pirate.\nUser: q2")

    asyncio.run(orch.reset())
    assert orch.directive == "Be helpful."
    assert orch.snapshot() == []

    with pytest.raises(ValueError):
        asyncio.run(orch.set_mission("   "))
    with pytest.raises(ValueError):
        asyncio.run(orch.ask(""))


def test_seed_placement_stores_directive_as_first_entry(fake_backend):
    backend = fake_backend([1, 0], prompt_tokens=2)
    orch = _orch(backend, directive_placement="seed", window=3)
    assert orch.snapshot() == [Message.system("Be helpful.")]

    asyncio.run(orch.ask("q1"))
    assert backend.prompts[0] == "System: Be helpful.\nUser: q1\nAssistant:"

    # the seeded directive is an ordinary entry and ages out of the window
    asyncio.run(orch.ask("q2"))
    assert all(m.role is not Role.SYSTEM for m in orch.snapshot())


def test_sampler_failure_rolls_back_and_resets_status(fake_backend):
    backend = fake_backend([np.full(16, -np.inf)], prompt_tokens=2)
    orch = _orch(backend)
    reply = asyncio.run(orch.ask("hi"))
    assert not reply.ok
    assert reply.text == FAILURE_REPLY
    assert orch.snapshot() == []
    snap = orch.generator.status.snapshot()
    assert snap["phase"] == "idle"
    assert snap["requests_failed"] == 1
