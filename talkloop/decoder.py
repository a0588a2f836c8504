"""Positioned decode batches and the llama.cpp generation engine boundary."""

from __future__ import annotations

import ctypes
import json
import logging
import time
from dataclasses import dataclass
from typing import FrozenSet, List, Optional

import numpy as np

from talkloop.config import LlmConfig
from talkloop.context_window import ConversationState, Token, TokenSequence
from talkloop.errors import DecodeError, EngineLoadError, SessionCacheError


@dataclass(frozen=True)
class Batch:
    tokens: List[Token]
    positions: List[int]
    logits_index: int

    def __len__(self) -> int:
        return len(self.tokens)


def build_batch(pending: TokenSequence, n_past: int) -> Batch:
    """Tokens at absolute positions ``n_past + i``; logits only for the last one."""
    tokens = list(pending)
    return Batch(
        tokens=tokens,
        positions=[n_past + i for i in range(len(tokens))],
        logits_index=len(tokens) - 1,
    )


# =========================
# llama.cpp engine
# =========================

class LlamaEngine:
    """Thin wrapper over ``llama_cpp.Llama`` exposing what the loop needs."""

    def __init__(self, cfg: LlmConfig, logger: logging.Logger):
        self.cfg = cfg
        self.logger = logger

        try:
            import llama_cpp
            from llama_cpp import Llama
        except ImportError as e:
            raise EngineLoadError(f"llama-cpp-python is not installed: {e}") from e

        self._lib = llama_cpp

        t0 = time.time()
        try:
            self._llm = Llama(
                model_path=cfg.model_path,
                n_ctx=cfg.n_ctx,
                n_batch=cfg.n_ctx,
                n_threads=cfg.n_threads,
                n_gpu_layers=cfg.n_gpu_layers if cfg.use_gpu else 0,
                flash_attn=cfg.flash_attn,
                seed=cfg.seed,
                verbose=False,
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise EngineLoadError(f"failed to load llama model {cfg.model_path}: {e}") from e

        self.eos_token = self._llm.token_eos()
        self.newline_token = self.tokenize("\n", add_bos=False, special=False)[-1]
        self.eog_tokens = self._find_eog_tokens(cfg.stop_markers)

        self.logger.info("llm_ready %s", json.dumps({
            "model": cfg.model_path,
            "n_ctx": self.n_ctx(),
            "n_vocab": self.n_vocab(),
            "threads": cfg.n_threads,
            "gpu_layers": cfg.n_gpu_layers if cfg.use_gpu else 0,
            "ms": int((time.time() - t0) * 1000),
        }))

    def _find_eog_tokens(self, markers) -> FrozenSet[Token]:
        found = {self.eos_token}
        for marker in markers:
            ids = self.tokenize(marker, add_bos=False)
            if len(ids) == 1:
                found.add(ids[0])
        return frozenset(found)

    def n_ctx(self) -> int:
        return self._llm.n_ctx()

    def n_vocab(self) -> int:
        return self._llm.n_vocab()

    def tokenize(self, text: str, add_bos: bool, special: bool = True) -> TokenSequence:
        return list(self._llm.tokenize(text.encode("utf-8"), add_bos=add_bos, special=special))

    def token_to_piece(self, token: Token) -> bytes:
        return self._llm.detokenize([token])

    def decode(self, batch: Batch) -> np.ndarray:
        """Run one forward step and return the logits of the marked token."""
        if not batch.tokens:
            raise DecodeError("empty batch")
        if batch.logits_index != len(batch) - 1:
            raise DecodeError("logits are only produced for the last batch token")

        # eval() continues from n_tokens and drops cached positions beyond it
        self._llm.n_tokens = batch.positions[0]
        try:
            self._llm.eval(batch.tokens)
        except RuntimeError as e:
            raise DecodeError(f"failed to decode: {e}") from e

        ptr = self._lib.llama_get_logits(self._llm.ctx)
        return np.ctypeslib.as_array(ptr, shape=(self.n_vocab(),)).copy()

    def load_state(self, path: str) -> TokenSequence:
        capacity = self.n_ctx()
        tokens = (self._lib.llama_token * capacity)()
        n_out = ctypes.c_size_t(0)
        ok = self._lib.llama_state_load_file(
            self._llm.ctx, path.encode("utf-8"), tokens, capacity, ctypes.byref(n_out))
        if not ok:
            raise SessionCacheError(f"failed to load session file '{path}'")
        return list(tokens[:n_out.value])

    def save_state(self, path: str, tokens: TokenSequence) -> None:
        arr = (self._lib.llama_token * len(tokens))(*tokens)
        ok = self._lib.llama_state_save_file(
            self._llm.ctx, path.encode("utf-8"), arr, len(tokens))
        if not ok:
            raise SessionCacheError(f"failed to save session file '{path}'")


# =========================
# Batch decoder adapter
# =========================

class BatchDecoder:
    """Feeds positioned batches to the engine and keeps the latest logits."""

    def __init__(self, engine, logger: logging.Logger):
        self.engine = engine
        self.logger = logger
        self._logits: Optional[np.ndarray] = None
        self._logits_pos = -1

    @property
    def logits(self) -> np.ndarray:
        if self._logits is None:
            raise DecodeError("no logits available, nothing has been decoded")
        return self._logits

    def decode(self, pending: TokenSequence, n_past: int) -> None:
        batch = build_batch(pending, n_past)
        t0 = time.time()
        try:
            logits = self.engine.decode(batch)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"failed to decode: {e}") from e

        if logits is None:
            raise DecodeError("engine returned no logits")

        self._logits = np.asarray(logits, dtype=np.float32)
        self._logits_pos = batch.positions[batch.logits_index]

        self.logger.debug("decode_done %s", json.dumps({
            "tokens": len(batch),
            "n_past": n_past,
            "ms": int((time.time() - t0) * 1000),
        }))

    def refresh(self, state: ConversationState) -> None:
        """Make sure the held logits belong to the last token in context.

        Needed when a whole batch was satisfied from the session cache and
        nothing was decoded for it.
        """
        if self._logits is not None and self._logits_pos == state.n_past - 1:
            return
        if not state.history or state.n_past == 0:
            raise DecodeError("no context to produce logits from")

        self.logger.debug("logits_refresh %s", json.dumps({"n_past": state.n_past}))
        self.decode([state.history[-1]], state.n_past - 1)
