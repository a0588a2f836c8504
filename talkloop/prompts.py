"""Prompt templates and their placeholder substitution.

Placeholders: ``{0}`` person, ``{1}`` bot name, ``{2}`` time (HH:MM),
``{3}`` year. Output is plain text; tokenization belongs to the engine.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from talkloop.config import PromptConfig
from talkloop.errors import ConfigError

PROMPT_WHISPER = "A conversation with a friend called {1}."

# llama 3 prompt format
PROMPT_LLAMA = """<|start_header_id|>system<|end_header_id|>

Write a singular response to {0} as {1}, where the context is that {0} is talking with a friend named {1}.
The transcript only consists of what {0} and {1} say to each other.
Only use text.
Do not include annotations, symbols, sounds, emojis, or code.
{1} responds with short and concise responses.
The current time is {2} and the year is {3}.
Only write a singular response to {0} as {1}, not a continuing transcript.<|eot_id|>"""

TURN_TEMPLATE = (
    "\n<|start_header_id|>{0}<|end_header_id|>\n\n"
    "{text}"
    "<|eot_id|>\n<|start_header_id|>{1}<|end_header_id|>\n\n"
)

REPLY_TEMPLATE = "\n<|start_header_id|>{1}<|end_header_id|>\n\n"


def replace_placeholders(template: str, person: str, bot_name: str, now: datetime) -> str:
    # Plain replace so braces elsewhere in custom prompts are left alone
    return (template
            .replace("{0}", person)
            .replace("{1}", bot_name)
            .replace("{2}", now.strftime("%H:%M"))
            .replace("{3}", now.strftime("%Y")))


def read_prompt_file(path: str) -> str:
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read prompt file {path}: {e}") from e
    if text.endswith("\n"):
        text = text[:-1]
    return text


class PromptAssembler:
    """Builds the system prompt once and the per-turn fragments on demand."""

    def __init__(self, cfg: PromptConfig, clock: Optional[Callable[[], datetime]] = None):
        self.person = cfg.person
        self.bot_name = cfg.bot_name
        self.clock = clock or datetime.now
        self.template = read_prompt_file(cfg.prompt_file) if cfg.prompt_file else PROMPT_LLAMA

    def _fill(self, template: str) -> str:
        return replace_placeholders(template, self.person, self.bot_name, self.clock())

    def system_prompt(self) -> str:
        return self._fill(self.template)

    def whisper_prompt(self) -> str:
        """Hint for the recognizer so it spells the bot name right."""
        return self._fill(PROMPT_WHISPER)

    def turn_fragment(self, utterance: str) -> str:
        """Wrap a normalized utterance between the speaker headers."""
        # Substitute names first so the utterance itself is never rewritten
        return self._fill(TURN_TEMPLATE).replace("{text}", utterance, 1)

    def reply_fragment(self) -> str:
        return self._fill(REPLY_TEMPLATE)
