"""Shared fakes standing in for the model, recognizer, microphone and speaker."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List

import numpy as np
import pytest

from talkloop.config import (AudioConfig, LlmConfig, SamplingConfig, SessionConfig,
                             TalkConfig, TtsConfig, WakeConfig)

SAMPLE_RATE = 16000

BOS = 256
EOS = 257
EOT = 258
N_VOCAB = 260
NEWLINE = ord("\n")


class FakeEngine:
    """Byte-level tokenizer; each decode returns logits peaked at the next scripted token."""

    def __init__(self, n_ctx: int = 4096):
        self._n_ctx = n_ctx
        self.eos_token = EOS
        self.newline_token = NEWLINE
        self.eog_tokens = frozenset({EOS, EOT})
        self.next_tokens: List[int] = []
        self.batches = []
        self.saved = []
        self.session_on_disk: List[int] = []
        self.fail_decode = False

    def n_ctx(self) -> int:
        return self._n_ctx

    def n_vocab(self) -> int:
        return N_VOCAB

    def tokenize(self, text, add_bos, special=True):
        tokens = list(text.encode("utf-8"))
        return [BOS] + tokens if add_bos else tokens

    def token_to_piece(self, token):
        return bytes([token]) if token < 256 else b""

    def decode(self, batch):
        if self.fail_decode:
            raise RuntimeError("llama_decode returned 1")
        self.batches.append(batch)
        logits = np.full(N_VOCAB, -10.0, dtype=np.float32)
        logits[self.next_tokens.pop(0) if self.next_tokens else EOT] = 10.0
        return logits

    def load_state(self, path):
        return list(self.session_on_disk)

    def save_state(self, path, tokens):
        self.saved.append(list(tokens))


class FakeSTT:
    def __init__(self, text: str = ""):
        self.text = text
        self.calls = []

    def transcribe(self, audio, prompt=""):
        self.calls.append(prompt)
        return self.text, 0.9


class FakeAudio:
    def __init__(self, snapshot: np.ndarray):
        self.snapshot = snapshot
        self.cleared = 0

    def get(self, ms):
        n = SAMPLE_RATE * ms // 1000
        return self.snapshot[-n:]

    def clear(self):
        self.cleared += 1


class FakeSpeaker:
    def __init__(self):
        self.spoken = []

    def speak(self, text, voice_id=None):
        self.spoken.append(text)
        return True


def speech_then_silence(seconds_speech: float = 0.75, seconds_silence: float = 1.25,
                        seed: int = 0) -> np.ndarray:
    """Noise burst followed by near silence, as when a speaker pauses."""
    rng = np.random.default_rng(seed)
    speech = rng.uniform(-0.5, 0.5, int(SAMPLE_RATE * seconds_speech))
    silence = rng.uniform(-0.001, 0.001, int(SAMPLE_RATE * seconds_silence))
    return np.concatenate((speech, silence)).astype(np.float32)


def steady_noise(seconds: float = 2.0, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(-0.5, 0.5, int(SAMPLE_RATE * seconds)).astype(np.float32)


@pytest.fixture()
def logger():
    return logging.getLogger("test_talkloop")


@pytest.fixture()
def fixed_clock():
    return lambda: datetime(2024, 5, 17, 9, 30)


def make_config(wake_phrase: str = "", session_path=None, heard_ok: str = "",
                n_ctx: int = 4096) -> TalkConfig:
    return TalkConfig(
        audio=AudioConfig(poll_ms=0),
        llm=LlmConfig(n_ctx=n_ctx, n_prev=16),
        sampling=SamplingConfig(temperature=0.0),
        wake=WakeConfig(phrase=wake_phrase),
        session=SessionConfig(path=session_path),
        tts=TtsConfig(heard_ok=heard_ok),
    )
