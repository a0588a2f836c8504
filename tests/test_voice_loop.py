"""Tests for the turn orchestrator with fake model, recognizer, microphone and speaker."""

from __future__ import annotations

import io
import signal
from dataclasses import replace

import pytest

from conftest import (BOS, NEWLINE, FakeAudio, FakeEngine, FakeSpeaker, FakeSTT,
                      make_config, speech_then_silence, steady_noise)
from talkloop import voice_loop
from talkloop.config import PromptConfig
from talkloop.errors import ContextOverflowError
from talkloop.voice_loop import TurnOrchestrator, TurnPhase


def tokens_of(text):
    return list(text.encode("utf-8"))


@pytest.fixture()
def engine():
    return FakeEngine()


@pytest.fixture()
def speaker():
    return FakeSpeaker()


def make_loop(logger, clock, engine, stt_text="", snapshot=None, cfg=None, speaker=None):
    cfg = cfg or make_config()
    stt = FakeSTT(stt_text)
    audio = FakeAudio(speech_then_silence() if snapshot is None else snapshot)
    loop = TurnOrchestrator(cfg, logger, engine, stt, audio, speaker or FakeSpeaker(),
                            out=io.StringIO(), clock=clock)
    return loop, stt, audio


def short_prompt_config(tmp_path, **kwargs):
    path = tmp_path / "prompt.txt"
    path.write_text("Hi {0}.", encoding="utf-8")
    return replace(make_config(**kwargs), prompt=PromptConfig(prompt_file=str(path)))


class TestStart:
    def test_prompt_decoded_and_kept(self, logger, fixed_clock, engine):
        loop, _, _ = make_loop(logger, fixed_clock, engine)
        state = loop.start()

        assert len(engine.batches) == 1
        assert engine.batches[0].tokens[0] == BOS
        assert engine.batches[0].positions[0] == 0
        assert state.n_keep == len(engine.batches[0].tokens)
        assert state.n_past == state.n_keep
        assert state.history == engine.batches[0].tokens

    def test_prompt_larger_than_context(self, logger, fixed_clock):
        loop, _, _ = make_loop(logger, fixed_clock, FakeEngine(n_ctx=10))
        with pytest.raises(ContextOverflowError):
            loop.start()

    def test_verbose_prompt_printed(self, logger, fixed_clock, engine, tmp_path):
        cfg = replace(make_config(), prompt=PromptConfig(verbose_prompt=True))
        loop, _, _ = make_loop(logger, fixed_clock, engine, cfg=cfg)
        loop.start()
        assert "The current time is 09:30" in loop.out.getvalue()


class TestTurn:
    def test_turn_is_answered_and_spoken(self, logger, fixed_clock, engine, speaker):
        loop, stt, audio = make_loop(logger, fixed_clock, engine, " Hello there.", speaker=speaker)
        state = loop.start()
        n_keep = state.n_keep
        engine.next_tokens = [ord("H"), ord("i"), NEWLINE]

        reply = loop.step()

        assert reply == "Hi"
        assert speaker.spoken == ["Hi"]
        assert stt.calls == ["A conversation with a friend called LLaMA."]
        assert "\033[1mHello there.\033[0m\n\nLLaMA: Hi\n\n" in loop.out.getvalue()
        assert audio.cleared == 1
        assert loop.phase is TurnPhase.IDLE

        fragment = engine.batches[1]
        assert fragment.positions[0] == n_keep
        assert b"Hello there.<|eot_id|>" in bytes(fragment.tokens)
        assert state.history[-2:] == [ord("H"), ord("i")]
        assert state.n_past == len(state.history)

    def test_no_speech_does_nothing(self, logger, fixed_clock, engine):
        loop, stt, audio = make_loop(logger, fixed_clock, engine, "hello", snapshot=steady_noise())
        loop.start()
        assert loop.step() is None
        assert stt.calls == []
        assert len(engine.batches) == 1
        assert audio.cleared == 0

    def test_empty_transcript_discarded(self, logger, fixed_clock, engine, speaker):
        loop, _, audio = make_loop(logger, fixed_clock, engine, " [BLANK_AUDIO]", speaker=speaker)
        loop.start()
        assert loop.step() is None
        assert audio.cleared == 1
        assert len(engine.batches) == 1
        assert speaker.spoken == []
        assert loop.phase is TurnPhase.IDLE

    def test_wake_phrase_rejected(self, logger, fixed_clock, engine):
        cfg = make_config(wake_phrase="hello bot")
        loop, _, audio = make_loop(logger, fixed_clock, engine, "goodbye now", cfg=cfg)
        loop.start()
        assert loop.step() is None
        assert audio.cleared == 1
        assert len(engine.batches) == 1

    def test_wake_phrase_accepted(self, logger, fixed_clock, engine):
        cfg = make_config(wake_phrase="hello bot")
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello bot what time is it", cfg=cfg)
        loop.start()
        engine.next_tokens = [ord("9"), NEWLINE]

        assert loop.step() == "9"
        fragment = bytes(engine.batches[1].tokens)
        assert b"\n\nwhat time is it<|eot_id|>" in fragment
        assert b"hello bot" not in fragment

    def test_forced_turn_skips_transcription(self, logger, fixed_clock, engine):
        loop, stt, _ = make_loop(logger, fixed_clock, engine, "ignored", snapshot=steady_noise())
        loop.start()
        engine.next_tokens = [ord("O"), ord("k"), NEWLINE]
        loop.request_speak()

        assert loop.step() == "Ok"
        assert stt.calls == []
        assert not loop.speak_event.is_set()
        assert engine.batches[1].tokens == tokens_of(loop.prompts.reply_fragment())

    def test_heard_ok_spoken_first(self, logger, fixed_clock, engine, speaker):
        cfg = make_config(heard_ok="got it")
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg, speaker=speaker)
        loop.start()
        engine.next_tokens = [ord("Y"), NEWLINE]
        loop.step()
        assert speaker.spoken == ["got it", "Y"]

    def test_multibyte_piece_streamed(self, logger, fixed_clock, engine):
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello")
        loop.start()
        engine.next_tokens = list("é".encode("utf-8")) + [NEWLINE]
        assert loop.step() == "é"

    def test_stop_requested_before_run(self, logger, fixed_clock, engine):
        loop, stt, _ = make_loop(logger, fixed_clock, engine, "hello")
        loop.stop()
        loop.run()
        assert loop.state is not None
        assert stt.calls == []


class TestSession:
    def test_saved_before_first_sample(self, logger, fixed_clock, engine, tmp_path):
        cfg = make_config(session_path=str(tmp_path / "session.bin"))
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg)
        state = loop.start()
        prompt = list(state.history)
        assert state.needs_save

        engine.next_tokens = [ord("H"), NEWLINE]
        loop.step()

        fragment = tokens_of(loop.prompts.turn_fragment("hello"))
        assert engine.saved == [prompt + fragment]
        assert state.needs_save

    def test_finished_turn_saved_on_next_turn(self, logger, fixed_clock, engine, tmp_path):
        cfg = make_config(session_path=str(tmp_path / "session.bin"))
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg)
        loop.start()
        engine.next_tokens = [ord("H"), NEWLINE]
        loop.step()
        engine.next_tokens = [ord("J"), NEWLINE]
        loop.step()

        assert len(engine.saved) == 2
        first = engine.saved[0]
        assert engine.saved[1][:len(first) + 1] == first + [ord("H")]

    def test_exact_session_skips_prompt_decode(self, logger, fixed_clock, engine, tmp_path):
        path = tmp_path / "session.bin"
        path.write_bytes(b"x")
        cfg = make_config(session_path=str(path))
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg)
        engine.session_on_disk = [BOS] + tokens_of(loop.prompts.system_prompt())

        state = loop.start()

        assert engine.batches == []
        assert state.n_past == state.n_keep == len(engine.session_on_disk)
        assert not state.needs_save

        engine.next_tokens = [ord("A"), NEWLINE]
        assert loop.step() == "A"
        assert engine.batches[0].positions[0] == state.n_keep
        assert engine.saved == []

    def test_partial_session_decodes_remainder(self, logger, fixed_clock, engine, tmp_path):
        path = tmp_path / "session.bin"
        path.write_bytes(b"x")
        cfg = make_config(session_path=str(path))
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg)
        prompt = [BOS] + tokens_of(loop.prompts.system_prompt())
        engine.session_on_disk = prompt[:20] + [255, 255]

        state = loop.start()

        assert len(engine.batches) == 1
        assert engine.batches[0].positions[0] == 20
        assert engine.batches[0].tokens == prompt[20:]
        assert state.history == prompt
        assert state.session_tokens == prompt

    def test_overflow_evicts_and_stops_saving(self, logger, fixed_clock, tmp_path):
        cfg = short_prompt_config(tmp_path, session_path=str(tmp_path / "session.bin"), n_ctx=200)
        engine = FakeEngine(n_ctx=200)
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello there", cfg=cfg)
        state = loop.start()

        engine.next_tokens = [ord("H"), ord("i"), NEWLINE]
        assert loop.step() == "Hi"
        assert len(engine.saved) == 1

        engine.next_tokens = [ord("Y"), NEWLINE]
        assert loop.step() == "Y"

        evicted = engine.batches[4]
        assert evicted.positions[0] == state.n_keep
        assert len(evicted.tokens) == state.n_prev + len(tokens_of(loop.prompts.turn_fragment("hello there")))
        assert state.persistence_disabled
        assert len(engine.saved) == 1
        assert state.n_past <= 200


class StoppingEngine(FakeEngine):
    """Requests a stop as soon as the first reply piece is streamed."""

    def __init__(self):
        super().__init__()
        self.loop = None

    def token_to_piece(self, token):
        self.loop.stop()
        return super().token_to_piece(token)


class TestCancellation:
    def test_stop_during_generation_ends_reply(self, logger, fixed_clock, speaker):
        engine = StoppingEngine()
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", speaker=speaker)
        engine.loop = loop
        state = loop.start()
        engine.next_tokens = [ord("A"), ord("B"), ord("C"), NEWLINE]

        reply = loop.step()

        assert reply == "A"
        assert speaker.spoken == ["A"]
        # prompt and turn fragment only; nothing after the first sample is decoded
        assert len(engine.batches) == 2
        assert engine.next_tokens == [ord("B"), ord("C"), NEWLINE]
        assert state.n_past == len(state.history)


class TestContextBudget:
    def test_room_for_a_turn_after_eviction_required(self, logger, fixed_clock, tmp_path):
        # 11 prompt + 16 kept + 99 fragment + 32 utterance tokens do not fit 150
        cfg = short_prompt_config(tmp_path, n_ctx=150)
        engine = FakeEngine(n_ctx=150)
        loop, _, _ = make_loop(logger, fixed_clock, engine, "hello", cfg=cfg)

        with pytest.raises(ContextOverflowError):
            loop.start()
        assert engine.batches == []
        assert loop.out.getvalue() == ""

    def test_turn_budget_that_fits(self, logger, fixed_clock, tmp_path):
        cfg = short_prompt_config(tmp_path, n_ctx=160)
        loop, _, _ = make_loop(logger, fixed_clock, FakeEngine(n_ctx=160), "hello", cfg=cfg)
        assert loop.start().n_keep == 11


class FakeCapture:
    def __init__(self, cfg, logger):
        self.closed = False

    def init(self):
        pass

    def resume(self):
        pass

    def close(self):
        self.closed = True


class TestMain:
    def test_ctrl_c_while_models_load_exits_cleanly(self, tmp_path, monkeypatch):
        cfg_path = tmp_path / "talk.yaml"
        cfg_path.write_text(f"logging:\n  log_dir: '{tmp_path}'\n", encoding="utf-8")
        previous = signal.getsignal(signal.SIGINT)
        captures = []

        def slow_stt(cfg, logger):
            # the user hits Ctrl+C while the recognizer model is loading
            signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
            return FakeSTT()

        def capture(cfg, logger):
            captures.append(FakeCapture(cfg, logger))
            return captures[-1]

        monkeypatch.setattr(voice_loop, "STT", slow_stt)
        monkeypatch.setattr(voice_loop, "LlamaEngine", lambda cfg, logger: FakeEngine())
        monkeypatch.setattr(voice_loop, "AudioCapture", capture)

        assert voice_loop.main(["--config", str(cfg_path)]) == 0
        assert captures[0].closed
        assert signal.getsignal(signal.SIGINT) is previous
