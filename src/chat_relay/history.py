"""Bounded in-process conversation history (thread-safe)."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class Role(Enum):
    SYSTEM = "System"
    USER = "User"
    ASSISTANT = "Assistant"

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class Message:
    """A single conversation turn."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    def to_dict(self) -> dict:
        return {"role": self.role.name.lower(), "content": self.content}


# -----------------------------
# ChatHistory
# -----------------------------
class ChatHistory:
    """Sliding window of the most recent ``window`` messages plus a directive.

    The directive (system/mission text) is kept apart from the entries and is
    never evicted by the window. Every operation takes the lock only for the
    mutation or copy itself.
    """

    def __init__(self, window: int = 5, *, directive: str = "") -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self._directive = directive
        self._entries: List[Message] = []
        self._lock = threading.Lock()

    @property
    def directive(self) -> str:
        with self._lock:
            return self._directive

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # --------- core API ----------
    def append(self, message: Message) -> None:
        """Append at the tail, then evict oldest entries down to ``window``."""
        if not isinstance(message, Message):
            raise TypeError("message must be a Message")
        with self._lock:
            self._entries.append(message)
            self._drop_oldest(self.window)

    def snapshot(self) -> List[Message]:
        """Return an ordered copy of the current entries."""
        with self._lock:
            return list(self._entries)

    def truncate_to(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        with self._lock:
            self._drop_oldest(limit)

    def reset(self, seed: Optional[Message] = None, *, directive: Optional[str] = None) -> None:
        """Clear all entries; optionally replace the directive and insert a seed."""
        with self._lock:
            self._entries.clear()
            if directive is not None:
                self._directive = directive
            if seed is not None:
                self._entries.append(seed)

    def discard_last(self, message: Message) -> bool:
        """Remove the tail entry if it is ``message`` (identity, not equality)."""
        with self._lock:
            if self._entries and self._entries[-1] is message:
                self._entries.pop()
                return True
            return False

    # --------- internals ----------
    def _drop_oldest(self, limit: int) -> None:
        excess = len(self._entries) - limit
        if excess > 0:
            del self._entries[:excess]
