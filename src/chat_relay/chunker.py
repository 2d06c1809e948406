"""Split long replies into transport-sized pieces on word boundaries."""

from __future__ import annotations

from typing import List


def split_message(content: str, max_length: int) -> List[str]:
    """Split ``content`` into pieces of at most ``max_length`` characters.

    Prefers the last whitespace inside the window; falls back to a hard cut
    when the window has none.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    pieces: List[str] = []
    rest = content or ""
    while len(rest) > max_length:
        window = rest[:max_length]
        cut = next((i for i in range(len(window) - 1, -1, -1) if window[i].isspace()), -1)
        piece = window[:cut].rstrip() if cut > 0 else ""
        if not piece:
            # no usable whitespace in range
            piece, rest = window, rest[max_length:].lstrip()
        else:
            rest = rest[cut:].lstrip()
        pieces.append(piece)
    if rest:
        pieces.append(rest)
    return pieces
