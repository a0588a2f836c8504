#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
talkloop voice loop: talk to a local LLaMA model through the microphone.

Each iteration takes a rolling audio snapshot, waits for the speaker to
pause, transcribes with faster-whisper, optionally checks a wake phrase,
folds the utterance into the generation context and streams the reply token
by token before handing it to the speak command.

The generation context persists across turns. On overflow it keeps the system
prompt plus a short trailing window, and it can be cached to a session file so
the next run does not have to evaluate the prompt again.
"""

from __future__ import annotations

import argparse
import codecs
import json
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, TextIO

# Keyboard trigger for "speak now"
try:
    from pynput import keyboard
    KEYBOARD_AVAILABLE = True
except ImportError:
    keyboard = None
    KEYBOARD_AVAILABLE = False

from talkloop.audio import AudioCapture
from talkloop.config import TalkConfig, ensure_logger, load_config, log_event, now_iso
from talkloop.context_window import ConversationState, ContextWindowManager, TokenSequence
from talkloop.decoder import BatchDecoder, LlamaEngine
from talkloop.errors import ContextOverflowError, TalkLoopError
from talkloop.prompts import PromptAssembler
from talkloop.sampler import TokenSampler
from talkloop.session_cache import SessionCache, evaluate_match
from talkloop.stt import STT
from talkloop.transcript import normalize_transcript
from talkloop.tts import Speaker
from talkloop.turn_gate import TurnGate


class TurnPhase(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    GATING = "gating"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SPEAKING = "speaking"


# =========================
# Turn Orchestrator
# =========================

class TurnOrchestrator:
    """Runs the listen / transcribe / generate / speak cycle."""

    def __init__(self, cfg: TalkConfig, logger: logging.Logger, engine, stt, audio, speaker,
                 out: Optional[TextIO] = None,
                 stop_event: Optional[threading.Event] = None,
                 speak_event: Optional[threading.Event] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sampler: Optional[TokenSampler] = None):
        self.cfg = cfg
        self.logger = logger
        self.engine = engine
        self.stt = stt
        self.audio = audio
        self.speaker = speaker
        self.out = out or sys.stdout

        self.stop_event = stop_event or threading.Event()
        self.speak_event = speak_event or threading.Event()

        self.prompts = PromptAssembler(cfg.prompt, clock=clock)
        self.gate = TurnGate(cfg, logger)
        self.window = ContextWindowManager(engine.n_ctx(), logger)
        self.decoder = BatchDecoder(engine, logger)
        self.cache = SessionCache(engine, logger)
        self.sampler = sampler or TokenSampler(
            cfg.sampling,
            eos_token=engine.eos_token,
            newline_token=engine.newline_token,
            eog_tokens=engine.eog_tokens,
            seed=cfg.llm.seed,
        )

        self.whisper_prompt = self.prompts.whisper_prompt()
        self.state: Optional[ConversationState] = None
        self.phase = TurnPhase.IDLE
        self.turns = 0

    # ---- helpers

    def _set_phase(self, phase: TurnPhase) -> None:
        if phase is not self.phase:
            self.logger.debug("phase %s", json.dumps({"from": self.phase.value, "to": phase.value}))
            self.phase = phase

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def _feed(self, pending: TokenSequence) -> None:
        """Fit pending tokens into the context and decode whatever is left."""
        state = self.state
        sent = self.window.prepare(state, pending)
        if sent:
            self.decoder.decode(sent, state.n_past)
            self.window.commit(state, sent)

    def request_speak(self) -> None:
        """Make the bot talk on the next iteration without waiting for speech."""
        self.speak_event.set()

    def stop(self) -> None:
        self.stop_event.set()

    # ---- startup

    def start(self) -> ConversationState:
        """Tokenize and evaluate the system prompt, reusing a saved session if any."""
        prompt = self.prompts.system_prompt()
        prompt_tokens = self.engine.tokenize(prompt, add_bos=True)

        if len(prompt_tokens) > self.window.capacity:
            raise ContextOverflowError(
                f"prompt is {len(prompt_tokens)} tokens, context holds {self.window.capacity}")

        # after an eviction the kept prompt, the trailing window and a full turn must fit
        overhead = len(self.engine.tokenize(self.prompts.turn_fragment(""), add_bos=False))
        needed = len(prompt_tokens) + self.cfg.llm.n_prev + overhead + self.cfg.stt.max_tokens
        if needed > self.window.capacity:
            raise ContextOverflowError(
                f"prompt ({len(prompt_tokens)}) + n_prev ({self.cfg.llm.n_prev}) + one turn "
                f"({overhead + self.cfg.stt.max_tokens}) tokens exceed context of {self.window.capacity}")

        state = ConversationState(
            n_keep=len(prompt_tokens),
            n_prev=self.cfg.llm.n_prev,
            session_path=str(Path(self.cfg.session.path).expanduser()) if self.cfg.session.path else None,
        )

        if state.session_path:
            state.session_tokens = self.cache.load(state.session_path)
            match = evaluate_match(state.session_tokens, prompt_tokens, self.cfg.session.resave_below)
            if state.session_tokens:
                self.cache.report(match)
            state.needs_save = match.needs_save

        self.state = state

        self._write("initializing - please wait ...\n")
        t0 = time.time()
        self._feed(prompt_tokens)

        if self.cfg.prompt.verbose_prompt:
            self._write("\n" + prompt + "\n")

        self.logger.info("prompt_ready %s", json.dumps({
            "n_keep": state.n_keep,
            "n_ctx": self.window.capacity,
            "n_prev": state.n_prev,
            "session": state.session_path,
            "session_tokens": len(state.session_tokens),
            "needs_save": state.needs_save,
            "ms": int((time.time() - t0) * 1000),
        }))

        self._write("done! start speaking in the microphone\n")
        if self.gate.uses_wake_phrase:
            self._write(f"the wake-up command is: '\033[1m{self.gate.wake_phrase}\033[0m'\n")
        self._write("\n")

        return state

    # ---- per turn

    def _discard(self, reason: str) -> None:
        self.logger.debug("turn_discarded %s", json.dumps({"reason": reason}))
        self.audio.clear()
        self._set_phase(TurnPhase.IDLE)

    def _generate(self, pending: TokenSequence) -> str:
        """Decode / sample until a stop token, streaming each piece."""
        state = self.state
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="ignore")
        pieces: List[str] = []
        done = False

        while True:
            if pending:
                self._feed(pending)
                pending = []

            if done:
                break

            # write the finished previous turn before sampling continues
            if state.persisting and state.needs_save:
                state.needs_save = False
                self.cache.save(state.session_path, state.history)

            self.decoder.refresh(state)
            token = self.sampler.sample(self.decoder.logits, state.history)

            if not self.sampler.is_stop(token):
                pending = [token]
                piece = utf8.decode(self.engine.token_to_piece(token))
                pieces.append(piece)
                self._write(piece)
            else:
                self._write("\n\n")
                done = True
                state.needs_save = True

            if self.stop_event.is_set():
                break

        pieces.append(utf8.decode(b"", final=True))
        return "".join(pieces)

    def step(self) -> Optional[str]:
        """One loop iteration; returns the reply text when a turn was answered."""
        self._set_phase(TurnPhase.LISTENING)

        # delay
        if self.stop_event.wait(self.cfg.audio.poll_ms / 1000.0):
            return None

        snapshot = self.audio.get(self.cfg.audio.snapshot_ms)
        forced = self.speak_event.is_set()
        if not (forced or self.gate.detect(snapshot)):
            return None

        t0 = time.time()
        self._set_phase(TurnPhase.GATING)
        heard = ""
        prob = None
        if not forced:
            voice = self.audio.get(self.cfg.audio.voice_ms)
            self._set_phase(TurnPhase.TRANSCRIBING)
            raw, prob = self.stt.transcribe(voice, self.whisper_prompt)
            heard = raw.strip()

        outcome = self.gate.decide(heard, forced=forced)
        if not outcome.accepted:
            self._discard(outcome.reason)
            return None

        if forced:
            self.speak_event.clear()
            text = ""
            fragment = self.prompts.reply_fragment()
        else:
            text = normalize_transcript(outcome.text)
            if not text or not self.engine.tokenize(text, add_bos=False):
                self._discard("empty_text")
                return None
            fragment = self.prompts.turn_fragment(text)

        self.turns += 1
        self.logger.info("turn_accepted %s", json.dumps({
            "turn": self.turns,
            "chars": len(text),
            "forced": forced,
            "stt_prob": round(prob, 3) if prob is not None else None,
            "wake_similarity": round(outcome.similarity, 3) if outcome.similarity is not None else None,
        }))

        # optionally give audio feedback that the current text is being processed
        if self.cfg.tts.heard_ok:
            self.speaker.speak(self.cfg.tts.heard_ok, self.cfg.tts.voice_id)

        self._write(f"\033[1m{text}\033[0m\n\n{self.prompts.bot_name}: ")

        self._set_phase(TurnPhase.GENERATING)
        reply = self._generate(self.engine.tokenize(fragment, add_bos=False))

        self._set_phase(TurnPhase.SPEAKING)
        self.speaker.speak(reply, self.cfg.tts.voice_id)
        self.audio.clear()

        self.logger.info("turn_timing %s", json.dumps({
            "turn": self.turns,
            "total_ms": int((time.time() - t0) * 1000),
            "reply_chars": len(reply),
            "n_past": self.state.n_past,
            "persisting": self.state.persisting,
        }))

        self._set_phase(TurnPhase.IDLE)
        return reply

    def run(self) -> None:
        """Main loop; returns once ``stop`` has been requested."""
        if self.state is None:
            self.start()

        self.audio.clear()
        self.logger.info("loop_start %s", json.dumps({
            "person": self.prompts.person,
            "bot": self.prompts.bot_name,
            "wake_phrase": self.gate.wake_phrase or None,
        }))

        while not self.stop_event.is_set():
            self.step()

        self._set_phase(TurnPhase.IDLE)
        self.logger.info("shutdown_requested %s", json.dumps({
            "reason": "stop_event",
            "turns": self.turns,
            "n_past": self.state.n_past,
        }))


# =========================
# Entry Point
# =========================

def start_keyboard_listener(loop: TurnOrchestrator, logger: logging.Logger):
    """Space bar makes the bot speak without waiting for the user."""
    if not KEYBOARD_AVAILABLE:
        return None

    def on_press(key):
        if key == keyboard.Key.space:
            loop.request_speak()
            logger.info("speak_requested %s", json.dumps({"key": "space"}))

    try:
        listener = keyboard.Listener(on_press=on_press)
        listener.start()
    except Exception as e:
        # pynput backends fail with assorted errors on headless hosts
        logger.warning("keyboard_listener_failed %s", json.dumps({"error": str(e)}))
        return None

    logger.info("keyboard_listener_started %s", json.dumps({"key": "space"}))
    return listener


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="talkloop", description="Talk to a local LLaMA model through the microphone.")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML config file (default: ~/.talkloop/config/talk.yaml)")
    args = parser.parse_args(argv)

    try:
        raw = load_config(args.config)
    except TalkLoopError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    logger, log_path = ensure_logger(raw.get("logging", {}))
    log_event(logger, "boot", {
        "log_file": log_path,
        "time": now_iso(),
        "version": raw.get("version", "v1"),
        "keyboard": KEYBOARD_AVAILABLE,
    })

    # Ctrl+C while models load must stop cleanly too
    stop_event = threading.Event()
    previous_sigint = signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())

    audio = None
    listener = None
    try:
        cfg = TalkConfig.from_dict(raw)

        stt = STT(cfg.stt, logger)
        engine = LlamaEngine(cfg.llm, logger)

        audio = AudioCapture(cfg.audio, logger)
        audio.init()
        audio.resume()

        if stop_event.is_set():
            logger.info("shutdown_requested %s", json.dumps({"reason": "sigint_during_load"}))
            return 0

        loop = TurnOrchestrator(cfg, logger, engine, stt, audio, Speaker(cfg.tts, logger),
                                stop_event=stop_event)
        listener = start_keyboard_listener(loop, logger)

        loop.start()
        loop.run()
    except TalkLoopError as e:
        logger.error("fatal_error %s", json.dumps({
            "error": str(e),
            "type": type(e).__name__
        }))
        return 1
    finally:
        if listener is not None:
            listener.stop()
        if audio is not None:
            audio.close()
        signal.signal(signal.SIGINT, previous_sigint)

    return 0


if __name__ == "__main__":
    sys.exit(main())
