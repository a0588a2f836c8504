"""Turn gating: energy VAD over the latest audio and wake phrase matching."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import Levenshtein
import numpy as np

from talkloop.config import TalkConfig
from talkloop.transcript import get_words


def high_pass_filter(data: np.ndarray, cutoff: float, sample_rate: float) -> np.ndarray:
    """First-order RC high-pass, returns a filtered copy."""
    samples = np.asarray(data, dtype=np.float32).ravel()
    out = samples.copy()
    if samples.size == 0:
        return out

    rc = 1.0 / (2.0 * np.pi * cutoff)
    dt = 1.0 / sample_rate
    alpha = dt / (rc + dt)

    x = samples.tolist()
    y = x[0]
    for i in range(1, len(x)):
        y = alpha * (y + x[i] - x[i - 1])
        out[i] = y
    return out


def vad_energy(pcm: np.ndarray, sample_rate: int, last_ms: int,
               freq_threshold: float) -> Optional[Tuple[float, float]]:
    """Mean absolute energy of the whole snapshot and of its trailing window.

    Returns None when the snapshot is not longer than the trailing window.
    """
    samples = np.asarray(pcm, dtype=np.float32).ravel()
    n_samples = samples.size
    n_samples_last = (sample_rate * last_ms) // 1000

    if n_samples_last >= n_samples:
        return None

    if freq_threshold > 0.0:
        samples = high_pass_filter(samples, freq_threshold, sample_rate)

    magnitude = np.abs(samples)
    energy_all = float(magnitude.mean())
    energy_last = float(magnitude[n_samples - n_samples_last:].mean())
    return energy_all, energy_last


def vad_simple(pcm: np.ndarray, sample_rate: int, last_ms: int,
               vad_threshold: float, freq_threshold: float) -> bool:
    """True once the trailing window has gone quiet relative to the snapshot."""
    energies = vad_energy(pcm, sample_rate, last_ms, freq_threshold)
    if energies is None:
        # not enough samples - assume no speech
        return False

    energy_all, energy_last = energies
    return energy_last <= vad_threshold * energy_all


def similarity(a: str, b: str) -> float:
    """Normalized edit similarity in [0, 1], case-insensitive."""
    a = a.lower()
    b = b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


class GateDecision(Enum):
    NO_SPEECH = "no_speech"
    SPEECH_WITH_TEXT = "speech_with_text"
    SPEECH_IGNORED = "speech_ignored"


@dataclass(frozen=True)
class GateOutcome:
    decision: GateDecision
    text: str = ""
    forced: bool = False
    reason: str = ""
    similarity: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.decision is GateDecision.SPEECH_WITH_TEXT


class TurnGate:
    """Decides whether the latest audio is a turn worth answering."""

    def __init__(self, cfg: TalkConfig, logger: logging.Logger):
        self.audio_cfg = cfg.audio
        self.logger = logger
        self.wake_phrase = cfg.wake.phrase.strip()
        self.wake_words = len(get_words(self.wake_phrase))
        self.wake_similarity = cfg.wake.similarity

    @property
    def uses_wake_phrase(self) -> bool:
        return self.wake_words > 0

    def detect(self, snapshot: np.ndarray) -> bool:
        """Run the VAD over a rolling snapshot."""
        energies = vad_energy(snapshot, self.audio_cfg.sample_rate,
                              self.audio_cfg.vad_window_ms, self.audio_cfg.freq_threshold)
        if energies is None:
            return False

        energy_all, energy_last = energies
        if self.audio_cfg.print_energy:
            self.logger.debug("vad_energy %s", json.dumps({
                "energy_all": round(energy_all, 6),
                "energy_last": round(energy_last, 6),
                "vad_threshold": self.audio_cfg.vad_threshold,
                "freq_threshold": self.audio_cfg.freq_threshold,
            }))

        return energy_last <= self.audio_cfg.vad_threshold * energy_all

    def decide(self, heard_text: str, forced: bool = False) -> GateOutcome:
        """Split off and check the wake phrase, return what the user said."""
        if forced:
            return GateOutcome(GateDecision.SPEECH_WITH_TEXT, forced=True, reason="forced")

        words = get_words(heard_text)

        if not self.uses_wake_phrase:
            text = " ".join(words)
            if not text:
                return GateOutcome(GateDecision.SPEECH_IGNORED, reason="empty")
            return GateOutcome(GateDecision.SPEECH_WITH_TEXT, text=text)

        wake_heard = " ".join(words[:self.wake_words])
        text = " ".join(words[self.wake_words:])
        sim = similarity(wake_heard, self.wake_phrase)

        if sim < self.wake_similarity or not text:
            self.logger.info("wake_rejected %s", json.dumps({
                "heard": wake_heard,
                "similarity": round(sim, 3),
                "threshold": self.wake_similarity,
                "has_text": bool(text),
            }))
            return GateOutcome(GateDecision.SPEECH_IGNORED, reason="wake_phrase", similarity=sim)

        return GateOutcome(GateDecision.SPEECH_WITH_TEXT, text=text, similarity=sim)
