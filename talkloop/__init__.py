"""talkloop: voice conversation with a local LLaMA model."""

__version__ = "0.1.0"
