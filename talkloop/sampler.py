"""Next-token selection: repetition penalty, then greedy or top-k/top-p/temperature."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from talkloop.config import SamplingConfig
from talkloop.context_window import Token


def softmax(scores: np.ndarray) -> np.ndarray:
    shifted = scores - np.max(scores)
    exp = np.exp(shifted)
    return exp / exp.sum()


class TokenSampler:
    """Picks exactly one token from a logits vector and the recent history."""

    def __init__(self, cfg: SamplingConfig, eos_token: Token, newline_token: Token,
                 eog_tokens: Iterable[Token] = (), seed: Optional[int] = None,
                 rng: Optional[np.random.Generator] = None):
        self.cfg = cfg
        self.eos_token = eos_token
        self.newline_token = newline_token
        self.eog_tokens = frozenset(eog_tokens) | {eos_token}
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def is_stop(self, token: Token) -> bool:
        """End of generation or newline ends the reply."""
        return token in self.eog_tokens or token == self.newline_token

    def apply_penalties(self, logits: np.ndarray, recent: Sequence[Token]) -> np.ndarray:
        """Neutralize EOS and penalize tokens seen in the last ``repeat_last_n``.

        The newline logit keeps its pre-penalty value so replies can still end.
        """
        scores = np.array(logits, dtype=np.float32, copy=True)
        n_vocab = scores.shape[0]

        if 0 <= self.eos_token < n_vocab:
            scores[self.eos_token] = 0.0

        nl_logit = scores[self.newline_token]

        last_n = self.cfg.repeat_last_n
        window = list(recent[-last_n:]) if last_n > 0 else []
        if window and self.cfg.repeat_penalty != 1.0:
            ids = np.unique(np.asarray(window, dtype=np.int64))
            ids = ids[(ids >= 0) & (ids < n_vocab)]
            values = scores[ids]
            scores[ids] = np.where(values > 0,
                                   values / self.cfg.repeat_penalty,
                                   values * self.cfg.repeat_penalty)

        scores[self.newline_token] = nl_logit
        return scores

    def candidates(self, scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Top-k, then nucleus, then temperature. Returns (token ids, probabilities)."""
        k = max(1, min(self.cfg.top_k, scores.shape[0]))
        ids = np.argpartition(-scores, k - 1)[:k]
        ids = ids[np.argsort(-scores[ids], kind="stable")]

        probs = softmax(scores[ids].astype(np.float64))
        cumulative = np.cumsum(probs)
        keep = int(np.searchsorted(cumulative, self.cfg.top_p, side="left")) + 1
        ids = ids[:max(1, min(keep, ids.shape[0]))]

        probs = softmax(scores[ids].astype(np.float64) / self.cfg.temperature)
        return ids, probs

    def probabilities(self, logits: np.ndarray, recent: Sequence[Token]) -> np.ndarray:
        """Selection probability of every vocabulary entry for this step."""
        scores = self.apply_penalties(logits, recent)
        dist = np.zeros(scores.shape[0], dtype=np.float64)

        if self.cfg.temperature <= 0:
            dist[int(np.argmax(scores))] = 1.0
            return dist

        ids, probs = self.candidates(scores)
        dist[ids] = probs
        return dist

    def sample(self, logits: np.ndarray, recent: Sequence[Token]) -> Token:
        scores = self.apply_penalties(logits, recent)

        if self.cfg.temperature <= 0:
            # Greedy sampling
            return int(np.argmax(scores))

        ids, probs = self.candidates(scores)
        return int(self.rng.choice(ids, p=probs))
