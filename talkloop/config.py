"""Config loading, typed config sections and logger setup for the talk loop."""

from __future__ import annotations

import copy
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from talkloop.errors import ConfigError

# =========================
# Config & Logging
# =========================

BASE_DIR = Path("~/.talkloop").expanduser()
CONFIG_PATH = BASE_DIR / "config" / "talk.yaml"
LOG_DIR = BASE_DIR / "logs"
MODELS_DIR = BASE_DIR / "models"

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "v1",
    "audio": {
        "capture_id": None,
        "sample_rate": 16000,
        "buffer_ms": 30000,
        "voice_ms": 10000,
        "snapshot_ms": 2000,
        "vad_window_ms": 1250,
        "vad_threshold": 0.6,
        "freq_threshold": 100.0,
        "poll_ms": 100,
        "print_energy": False,
    },
    "stt": {
        "model": "small.en",
        "device": "cpu",
        "compute_type": "int8",
        "language": "en",
        "translate": False,
        "max_tokens": 32,
        "threads": 4,
    },
    "llm": {
        "model_path": str(MODELS_DIR / "Meta-Llama-3-8B-Instruct-IQ4_XS.gguf"),
        "n_ctx": 2048,
        "n_threads": 4,
        "n_gpu_layers": 999,
        "use_gpu": True,
        "flash_attn": False,
        "seed": 1,
        "n_prev": 64,
        "stop_markers": ["<|eot_id|>", "<|end_of_text|>"],
    },
    "sampling": {
        "top_k": 5,
        "top_p": 0.80,
        "temperature": 0.30,
        "repeat_penalty": 1.1764,
        "repeat_last_n": 256,
    },
    "prompt": {
        "person": "Georgi",
        "bot_name": "LLaMA",
        "prompt_file": None,
        "verbose_prompt": False,
    },
    "wake": {
        "phrase": "",
        "similarity": 0.5,
    },
    "session": {
        "path": None,
        "resave_below": 0.75,
    },
    "tts": {
        "speak_command": str(BASE_DIR / "speak.sh"),
        "speak_file": str(BASE_DIR / "to_speak.txt"),
        "voice_id": 2,
        "heard_ok": "",
    },
    "logging": {
        "debug": False,
        "log_dir": str(LOG_DIR),
    },
}


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load YAML config, writing the defaults first if the file is missing."""
    path = Path(path) if path else CONFIG_PATH
    if not path.exists():
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(cfg, f, sort_keys=False)
        return cfg

    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    if not isinstance(cfg, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    # Normalize sections, file values win over defaults
    for key, defaults in DEFAULT_CONFIG.items():
        if isinstance(defaults, dict):
            section = cfg.get(key) or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Config section '{key}' must be a mapping")
            cfg[key] = {**defaults, **section}
        else:
            cfg.setdefault(key, defaults)

    return cfg


@dataclass(frozen=True)
class AudioConfig:
    capture_id: Optional[int] = None
    sample_rate: int = 16000
    buffer_ms: int = 30000
    voice_ms: int = 10000
    snapshot_ms: int = 2000
    vad_window_ms: int = 1250
    vad_threshold: float = 0.6
    freq_threshold: float = 100.0
    poll_ms: int = 100
    print_energy: bool = False


@dataclass(frozen=True)
class SttConfig:
    model: str = "small.en"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str = "en"
    translate: bool = False
    max_tokens: int = 32
    threads: int = 4


@dataclass(frozen=True)
class LlmConfig:
    model_path: str = ""
    n_ctx: int = 2048
    n_threads: int = 4
    n_gpu_layers: int = 999
    use_gpu: bool = True
    flash_attn: bool = False
    seed: int = 1
    n_prev: int = 64
    stop_markers: Tuple[str, ...] = ("<|eot_id|>", "<|end_of_text|>")


@dataclass(frozen=True)
class SamplingConfig:
    top_k: int = 5
    top_p: float = 0.80
    temperature: float = 0.30
    repeat_penalty: float = 1.1764
    repeat_last_n: int = 256


@dataclass(frozen=True)
class PromptConfig:
    person: str = "Georgi"
    bot_name: str = "LLaMA"
    prompt_file: Optional[str] = None
    verbose_prompt: bool = False


@dataclass(frozen=True)
class WakeConfig:
    phrase: str = ""
    similarity: float = 0.5


@dataclass(frozen=True)
class SessionConfig:
    path: Optional[str] = None
    resave_below: float = 0.75


@dataclass(frozen=True)
class TtsConfig:
    speak_command: str = ""
    speak_file: str = ""
    voice_id: int = 2
    heard_ok: str = ""


@dataclass(frozen=True)
class TalkConfig:
    """Immutable view over the loaded YAML, built once at startup."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    stt: SttConfig = field(default_factory=SttConfig)
    llm: LlmConfig = field(default_factory=LlmConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    wake: WakeConfig = field(default_factory=WakeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    tts: TtsConfig = field(default_factory=TtsConfig)

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "TalkConfig":
        """Build the typed config from a ``load_config`` dict (logging section excluded)."""
        try:
            llm = dict(cfg.get("llm", {}))
            if "stop_markers" in llm:
                llm["stop_markers"] = tuple(llm["stop_markers"] or ())
            config = cls(
                audio=AudioConfig(**cfg.get("audio", {})),
                stt=SttConfig(**cfg.get("stt", {})),
                llm=LlmConfig(**llm),
                sampling=SamplingConfig(**cfg.get("sampling", {})),
                prompt=PromptConfig(**cfg.get("prompt", {})),
                wake=WakeConfig(**cfg.get("wake", {})),
                session=SessionConfig(**cfg.get("session", {})),
                tts=TtsConfig(**cfg.get("tts", {})),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown config key: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Reject values the loop cannot run with."""
        problems = []

        if self.audio.sample_rate <= 0:
            problems.append("audio.sample_rate must be positive")
        if self.audio.vad_window_ms <= 0:
            problems.append("audio.vad_window_ms must be positive")
        if self.audio.snapshot_ms <= self.audio.vad_window_ms:
            problems.append("audio.snapshot_ms must exceed audio.vad_window_ms")
        if self.audio.voice_ms > self.audio.buffer_ms:
            problems.append("audio.voice_ms must not exceed audio.buffer_ms")
        if self.llm.n_ctx <= 0:
            problems.append("llm.n_ctx must be positive")
        if self.llm.n_prev < 0 or self.llm.n_prev >= self.llm.n_ctx:
            problems.append("llm.n_prev must be within [0, n_ctx)")
        if self.sampling.top_k < 1:
            problems.append("sampling.top_k must be at least 1")
        if not 0.0 < self.sampling.top_p <= 1.0:
            problems.append("sampling.top_p must be within (0, 1]")
        if self.sampling.repeat_last_n < 0:
            problems.append("sampling.repeat_last_n must not be negative")
        if self.sampling.repeat_penalty <= 0:
            problems.append("sampling.repeat_penalty must be positive")
        if not 0.0 <= self.wake.similarity <= 1.0:
            problems.append("wake.similarity must be within [0, 1]")
        if not 0.0 <= self.session.resave_below <= 1.0:
            problems.append("session.resave_below must be within [0, 1]")

        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))


def ensure_logger(log_cfg: Dict[str, Any]) -> Tuple[logging.Logger, str]:
    """Set up file + stderr logger."""
    log_dir = Path(log_cfg.get("log_dir") or LOG_DIR).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d")
    log_path = log_dir / f"talk-{ts}.log"

    logger = logging.getLogger("talkloop.voice")
    logger.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.INFO)
    logger.handlers.clear()

    # File handler
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    # Console handler; stdout also carries the streamed reply
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.INFO)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, str(log_path)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_event(logger: logging.Logger, kind: str, payload: Dict[str, Any]):
    try:
        logger.info("%s %s", kind, json.dumps(payload))
    except (TypeError, ValueError):
        logger.info("%s %s", kind, str(payload))
