"""ChatLoom - an interactive terminal chat client for OpenAI-compatible APIs."""

__version__ = "0.3.0"
