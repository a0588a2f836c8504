#!/usr/bin/env python3
"""
talkloop environment checker.
Reports: deps, speak command, model files, config, and audio devices.
"""
from __future__ import annotations

import argparse
import json
import shlex
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from talkloop.config import CONFIG_PATH, DEFAULT_CONFIG

DEPS = {
    "numpy": "numpy",
    "pyyaml": "yaml",
    "sounddevice": "sounddevice",
    "faster-whisper": "faster_whisper",
    "llama-cpp-python": "llama_cpp",
    "levenshtein": "Levenshtein",
    "pynput": "pynput",              # optional
}


def try_import(name: str) -> bool:
    try:
        __import__(name)
        return True
    except Exception:
        return False


def read_config(path: Path) -> Dict[str, Any]:
    """Raw YAML, without writing defaults; the checker never touches disk."""
    import yaml
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    return cfg if isinstance(cfg, dict) else {}


def build_report(cfg_path: Optional[Path] = None) -> Dict[str, Any]:
    cfg_path = Path(cfg_path) if cfg_path else CONFIG_PATH

    report: Dict[str, Any] = {
        "python": {"version": sys.version.split()[0], "executable": sys.executable},
        "paths": {"config": str(cfg_path), "config_exists": cfg_path.exists()},
        "config": {},
        "deps": {},
        "binaries": {},
        "models": {"llm_model_ok": None, "session_file_exists": None},
        "audio": {"input_default": None, "inputs": []},
    }

    # --- config
    cfg: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            cfg = read_config(cfg_path)
        except Exception as e:
            report["config"]["error"] = f"{e.__class__.__name__}: {e}"

    def section(name: str) -> Dict[str, Any]:
        return {**DEFAULT_CONFIG[name], **(cfg.get(name) or {})}

    llm, stt, tts = section("llm"), section("stt"), section("tts")
    wake, session = section("wake"), section("session")

    report["config"].update({
        "llm_model": llm.get("model_path"),
        "n_ctx": llm.get("n_ctx"),
        "stt_model": stt.get("model"),
        "stt_language": stt.get("language"),
        "wake_phrase": wake.get("phrase") or None,
        "session_path": session.get("path"),
        "person": section("prompt").get("person"),
        "bot_name": section("prompt").get("bot_name"),
    })

    # --- deps
    for pkg, mod in DEPS.items():
        report["deps"][pkg] = try_import(mod)

    # --- binaries
    command = shlex.split(tts.get("speak_command") or "")
    if command:
        exe = command[0]
        report["binaries"]["speak_command"] = shutil.which(exe) or (exe if Path(exe).expanduser().exists() else None)
    else:
        report["binaries"]["speak_command"] = None

    # --- models on disk
    model_path = llm.get("model_path")
    report["models"]["llm_model_ok"] = bool(model_path) and Path(model_path).expanduser().exists()
    if session.get("path"):
        report["models"]["session_file_exists"] = Path(session["path"]).expanduser().exists()

    # --- audio devices (best-effort)
    if report["deps"]["sounddevice"]:
        try:
            import sounddevice as sd
            def_dev = sd.default.device
            inputs = sd.query_devices(def_dev[0]) if def_dev and def_dev[0] is not None else None
            report["audio"]["input_default"] = inputs["name"] if inputs else None
            report["audio"]["inputs"] = [
                {"id": i, "name": d["name"]}
                for i, d in enumerate(sd.query_devices())
                if d.get("max_input_channels", 0) > 0
            ]
        except Exception as e:
            report["audio"]["error"] = f"{e.__class__.__name__}: {e}"

    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="talkloop-check", description="Report talkloop environment.")
    parser.add_argument("--config", type=Path, default=None)
    args = parser.parse_args(argv)

    print(json.dumps(build_report(args.config), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
