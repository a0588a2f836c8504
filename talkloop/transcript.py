"""Cleanup of recognized text into the utterance fed to the generator."""

from __future__ import annotations

import string
from typing import List

WHITESPACE = " \t\n\r\f\v"
ALLOWED_CHARS = frozenset(string.ascii_letters + string.digits + ".,?!:'-" + WHITESPACE)


def _drop_spans(text: str, opener: str, closer: str) -> str:
    """Remove ``opener ... closer`` spans, shortest match, never across a line break."""
    out = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == opener:
            j = i + 1
            while j < n and text[j] != closer and text[j] != "\n":
                j += 1
            if j < n and text[j] == closer:
                i = j + 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def normalize_transcript(raw: str) -> str:
    """Strip annotations and odd characters, keep the first line, trim.

    An empty result means there is nothing to say and the turn is dropped.
    """
    if not raw:
        return ""

    text = _drop_spans(raw, "[", "]")
    text = _drop_spans(text, "(", ")")
    text = "".join(ch for ch in text if ch in ALLOWED_CHARS)

    newline = text.find("\n")
    if newline != -1:
        text = text[:newline]

    return text.strip(WHITESPACE)


def get_words(text: str) -> List[str]:
    return text.split()
