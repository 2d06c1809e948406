from __future__ import annotations

import random

import pytest

from chat_relay.chunker import split_message


def test_empty_and_short():
    assert split_message("", 10) == []
    assert split_message("short", 10) == ["short"]
    assert split_message("exactly10!", 10) == ["exactly10!"]


def test_invalid_limit():
    with pytest.raises(ValueError):
        split_message("abc", 0)


def test_splits_on_last_whitespace():
    assert split_message("hello world foo", 11) == ["hello", "world foo"]
    assert split_message("hello world foo", 12) == ["hello world", "foo"]
    assert split_message("aaa bbb ccc ddd", 8) == ["aaa bbb", "ccc ddd"]


def test_hard_cut_without_whitespace():
    assert split_message("abcdefghij", 4) == ["abcd", "efgh", "ij"]


def test_trims_around_split_points():
    assert split_message("one  \n two", 6) == ["one", "two"]


def test_random_texts_keep_words_and_limits():
    rng = random.Random(1234)
    for _ in range(200):
        limit = rng.randint(5, 40)
        words = [
            "".join(rng.choice("abcdefgh") for _ in range(rng.randint(1, limit)))
            for _ in range(rng.randint(0, 30))
        ]
        text = "".join(w + rng.choice([" ", "  ", "\n", "\t "]) for w in words).strip()
        pieces = split_message(text, limit)

        assert all(0 < len(p) <= limit for p in pieces)
        assert " ".join(pieces).split() == text.split()
        if len(text) <= limit:
            assert pieces == ([text] if text else [])
