"""Render a directive and a history snapshot into one completion prompt."""

from __future__ import annotations

from typing import List, Sequence

from .history import Message, Role

GENERATION_CUE = f"{Role.ASSISTANT.label}:"


def render_message(message: Message) -> str:
    return f"{message.role.label}: {message.content}"


def build_prompt(directive: str, history: Sequence[Message]) -> str:
    """Linearize ``history`` one message per line, directive first.

    An empty directive is omitted. The final line is always ``Assistant:``
    so the model continues as the assistant.
    """
    lines: List[str] = []
    if directive and directive.strip():
        lines.append(render_message(Message.system(directive.strip())))
    lines.extend(render_message(m) for m in history)
    lines.append(GENERATION_CUE)
    return "\n".join(lines)
