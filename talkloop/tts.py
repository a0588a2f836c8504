"""Speech output through an external speak command."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import Optional

from talkloop.config import TtsConfig


class Speaker:
    """Writes text to ``speak_file`` and runs ``speak_command <voice_id> <speak_file>``."""

    def __init__(self, cfg: TtsConfig, logger: logging.Logger, timeout_s: float = 120.0):
        self.cfg = cfg
        self.logger = logger
        self.timeout_s = timeout_s
        self.speak_file = Path(cfg.speak_file).expanduser()
        self.command = shlex.split(cfg.speak_command) if cfg.speak_command else []
        self.last_dur_ms = 0

        if not self.command:
            self.logger.warning("speak_command_missing %s", json.dumps({"action": "text_only"}))

    def speak(self, text: str, voice_id: Optional[int] = None) -> bool:
        """Say ``text``; failures are logged and reported, never raised."""
        if not text or not self.command:
            return True

        voice = self.cfg.voice_id if voice_id is None else voice_id
        t0 = time.time()

        try:
            self.speak_file.parent.mkdir(parents=True, exist_ok=True)
            self.speak_file.write_text(text, encoding="utf-8")
        except OSError as e:
            self.logger.warning("speak_file_failed %s", json.dumps({
                "path": str(self.speak_file), "error": str(e)
            }))
            return False

        try:
            proc = subprocess.run(
                self.command + [str(voice), str(self.speak_file)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning("tts_failed %s", json.dumps({"error": str(e)}))
            return False

        self.last_dur_ms = int((time.time() - t0) * 1000)

        if proc.returncode != 0:
            self.logger.warning("tts_failed %s", json.dumps({
                "returncode": proc.returncode,
                "stderr": (proc.stderr or "")[-200:],
            }))
            return False

        self.logger.info("tts_profile %s", json.dumps({
            "chars": len(text), "voice": voice, "total_ms": self.last_dur_ms
        }))
        return True
