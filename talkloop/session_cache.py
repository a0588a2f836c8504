"""Persisted session cache: engine state plus the tokens that produced it."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Sequence

from talkloop.context_window import Token, TokenSequence
from talkloop.errors import SessionCacheError


def common_prefix_len(a: Sequence[Token], b: Sequence[Token]) -> int:
    """Length of the longest common prefix of two token sequences."""
    n = 0
    limit = min(len(a), len(b))
    while n < limit and a[n] == b[n]:
        n += 1
    return n


@dataclass(frozen=True)
class SessionMatch:
    n_matching: int
    prompt_size: int
    exact: bool
    low_similarity: bool
    needs_save: bool


def evaluate_match(session_tokens: Sequence[Token], prompt_tokens: Sequence[Token],
                   resave_below: float = 0.75) -> SessionMatch:
    """Compare a loaded session against the freshly tokenized prompt.

    A session that already covers ``resave_below`` of the prompt is not
    re-saved at the first sampling step; saving is slow and a close cache only
    speeds up the initial prompt.
    """
    n_matching = common_prefix_len(session_tokens, prompt_tokens)
    prompt_size = len(prompt_tokens)
    return SessionMatch(
        n_matching=n_matching,
        prompt_size=prompt_size,
        exact=bool(session_tokens) and n_matching >= prompt_size,
        low_similarity=bool(session_tokens) and n_matching < prompt_size / 2,
        needs_save=n_matching < prompt_size * resave_below,
    )


class SessionCache:
    """Loads and saves session files through the engine's state primitives."""

    def __init__(self, engine, logger: logging.Logger):
        self.engine = engine
        self.logger = logger

    def load(self, path: str) -> TokenSequence:
        """Restore a session; a missing file is an empty session, a broken one is fatal."""
        self.logger.info("session_load %s", json.dumps({"path": path}))

        if not os.path.exists(path):
            self.logger.info("session_missing %s", json.dumps({
                "path": path, "action": "will_create"
            }))
            return []

        try:
            tokens = list(self.engine.load_state(path))
        except SessionCacheError:
            raise
        except Exception as e:
            raise SessionCacheError(f"failed to load session file '{path}': {e}") from e

        self.logger.info("session_loaded %s", json.dumps({
            "path": path, "tokens": len(tokens)
        }))
        return tokens

    def save(self, path: str, tokens: Sequence[Token]) -> None:
        try:
            self.engine.save_state(path, list(tokens))
        except SessionCacheError:
            raise
        except Exception as e:
            raise SessionCacheError(f"failed to save session file '{path}': {e}") from e

        self.logger.info("session_saved %s", json.dumps({
            "path": path, "tokens": len(tokens)
        }))

    def report(self, match: SessionMatch) -> None:
        """Log how well the loaded session fits the prompt."""
        payload = {"matching": match.n_matching, "prompt": match.prompt_size}
        if match.exact:
            self.logger.info("session_exact_match %s", json.dumps(payload))
        elif match.low_similarity:
            self.logger.warning("session_low_similarity %s", json.dumps({
                **payload, "note": "will mostly be re-evaluated"
            }))
        else:
            self.logger.info("session_partial_match %s", json.dumps(payload))
