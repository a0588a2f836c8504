"""Speech recognition adapter over faster-whisper."""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Tuple

import numpy as np

# STT deps
try:
    from faster_whisper import WhisperModel
    WHISPER_AVAILABLE = True
except ImportError:
    WhisperModel = None
    WHISPER_AVAILABLE = False

from talkloop.config import SttConfig
from talkloop.errors import EngineLoadError


class STT:
    """Single-segment greedy transcription of short utterances."""

    def __init__(self, cfg: SttConfig, logger: logging.Logger):
        self.cfg = cfg
        self.logger = logger
        self.language = cfg.language
        self.translate = cfg.translate

        if not WHISPER_AVAILABLE:
            raise EngineLoadError("faster-whisper is not installed")

        try:
            self._whisper = WhisperModel(
                cfg.model,
                device=cfg.device,
                compute_type=cfg.compute_type,
                cpu_threads=cfg.threads,
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise EngineLoadError(f"failed to load whisper model {cfg.model}: {e}") from e

        if not self._whisper.model.is_multilingual:
            if self.language != "en" or self.translate:
                self.logger.warning("stt_not_multilingual %s", json.dumps({
                    "model": cfg.model,
                    "ignored_language": self.language,
                    "ignored_translate": self.translate,
                }))
                self.language = "en"
                self.translate = False

        self.logger.info("stt_ready %s", json.dumps({
            "engine": "faster-whisper",
            "model": cfg.model,
            "device": cfg.device,
            "threads": cfg.threads,
            "lang": self.language,
            "task": "translate" if self.translate else "transcribe",
        }))

    def transcribe(self, audio: np.ndarray, prompt: str = "") -> Tuple[str, float]:
        """Return the recognized text and its mean token probability.

        Recognizer failures yield ``("", 0.0)``; the turn is then dropped.
        """
        if audio is None or len(audio) == 0:
            return "", 0.0

        t0 = time.time()
        try:
            segments, info = self._whisper.transcribe(
                np.asarray(audio, dtype=np.float32).ravel(),
                language=None if self.language == "auto" else self.language,
                task="translate" if self.translate else "transcribe",
                beam_size=1,
                best_of=1,
                temperature=0.0,
                initial_prompt=prompt or None,
                condition_on_previous_text=False,
                without_timestamps=True,
                max_new_tokens=self.cfg.max_tokens,
            )
            segments = list(segments)
        except (ValueError, RuntimeError) as e:
            self.logger.error("stt_failed %s", json.dumps({"error": str(e)}))
            return "", 0.0

        text = "".join(seg.text for seg in segments)
        prob = 0.0
        if segments:
            prob = sum(math.exp(seg.avg_logprob) for seg in segments) / len(segments)

        self.logger.info("stt_done %s", json.dumps({
            "len": len(text),
            "prob": round(prob, 3),
            "lang": info.language if info else self.language,
            "ms": int((time.time() - t0) * 1000),
        }))

        return text, prob
