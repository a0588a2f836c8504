"""Conversation state and the context window policy over it.

The window keeps ``n_past`` within the engine capacity. On overflow it drops
everything after the system prompt and re-feeds a short trailing window of
history. Tokens already present in a loaded session cache are skipped instead
of being decoded again.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

Token = int
TokenSequence = List[Token]


@dataclass
class ConversationState:
    """Mutable generation context, owned by the turn orchestrator."""

    n_keep: int = 0
    n_prev: int = 64
    history: TokenSequence = field(default_factory=list)
    n_past: int = 0
    session_tokens: TokenSequence = field(default_factory=list)
    n_session_consumed: int = 0
    session_path: Optional[str] = None
    needs_save: bool = False
    persistence_disabled: bool = False

    @property
    def persisting(self) -> bool:
        return bool(self.session_path) and not self.persistence_disabled

    def disable_persistence(self) -> None:
        """Stop saving the session for the rest of the run; irreversible."""
        self.session_path = None
        self.persistence_disabled = True
        self.needs_save = False

    def trailing(self, n: int) -> TokenSequence:
        if n <= 0:
            return []
        return self.history[-n:]


class ContextWindowManager:
    """Fits pending tokens into the context and tracks session reuse."""

    def __init__(self, capacity: int, logger: Optional[logging.Logger] = None):
        self.capacity = capacity
        self.logger = logger or logging.getLogger("talkloop.voice")

    def overflows(self, state: ConversationState, pending: TokenSequence) -> bool:
        return state.n_past + len(pending) > self.capacity

    def evict(self, state: ConversationState, pending: TokenSequence) -> TokenSequence:
        """Reset to the kept prompt and re-feed the trailing window if pending does not fit."""
        if not self.overflows(state, pending):
            return pending

        n_before = state.n_past
        state.n_past = state.n_keep
        pending = state.trailing(state.n_prev) + list(pending)

        # the token stream no longer continues any saved session
        was_persisting = state.persisting
        state.disable_persistence()
        del state.session_tokens[state.n_session_consumed:]

        self.logger.info("context_evicted %s", json.dumps({
            "n_past_before": n_before,
            "n_keep": state.n_keep,
            "n_prev": state.n_prev,
            "pending": len(pending),
            "capacity": self.capacity,
            "session_disabled": was_persisting,
        }))

        if self.overflows(state, pending):
            self.logger.warning("context_still_full %s", json.dumps({
                "n_past": state.n_past,
                "pending": len(pending),
                "capacity": self.capacity,
            }))

        return pending

    def reuse_prefix(self, state: ConversationState, pending: TokenSequence) -> TokenSequence:
        """Skip pending tokens that the loaded session already covers.

        Two-pointer walk: ``pending[i]`` against
        ``session_tokens[n_session_consumed]``. Matched tokens advance
        ``n_past`` and join ``history``; the first mismatch truncates the
        session to what has been verified.
        """
        if state.n_session_consumed >= len(state.session_tokens):
            return pending

        i = 0
        while i < len(pending):
            if pending[i] != state.session_tokens[state.n_session_consumed]:
                # cache is stale beyond this point
                del state.session_tokens[state.n_session_consumed:]
                break

            state.n_past += 1
            state.n_session_consumed += 1
            i += 1

            if state.n_session_consumed >= len(state.session_tokens):
                break

        if i > 0:
            # already in the engine state, so they count as history without a decode
            state.history.extend(pending[:i])
            self.logger.debug("session_reused %s", json.dumps({
                "tokens": i,
                "n_past": state.n_past,
                "n_session_consumed": state.n_session_consumed,
            }))

        return list(pending[i:])

    def prepare(self, state: ConversationState, pending: TokenSequence) -> TokenSequence:
        """Evict if needed, apply session reuse, track what will be decoded."""
        pending = self.evict(state, list(pending))
        pending = self.reuse_prefix(state, pending)

        if pending and state.persisting:
            state.session_tokens.extend(pending)
            state.n_session_consumed = len(state.session_tokens)

        return pending

    def commit(self, state: ConversationState, sent: TokenSequence) -> None:
        """Record tokens the engine has just decoded."""
        state.history.extend(sent)
        state.n_past += len(sent)
