"""Token counting helpers shared by the chunker, request builder and session manager."""

import tiktoken

# Framing cost of a chat message: <|start|>role<|sep|>content<|end|>
TOKENS_PER_MESSAGE = 3
# Every reply is primed with <|start|>assistant<|message|>
REPLY_PRIMING_TOKENS = 3

_ENCODING_CACHE: dict[str, tiktoken.Encoding] = {}


def get_encoding(model: str) -> tiktoken.Encoding:
    """Returns (and caches) the tiktoken encoding for a model name."""
    if model not in _ENCODING_CACHE:
        try:
            _ENCODING_CACHE[model] = tiktoken.encoding_for_model(model)
        except KeyError:
            # Unknown or self-hosted models count with cl100k_base
            _ENCODING_CACHE[model] = tiktoken.get_encoding("cl100k_base")
    return _ENCODING_CACHE[model]


def count_text(text: str, model: str = "gpt-4") -> int:
    """Counts tokens in a single string. Special-token text is counted as plain text."""
    return len(get_encoding(model).encode(text, disallowed_special=()))


def count_message(message: dict, model: str = "gpt-4") -> int:
    content = message.get("content") or ""
    return (
        TOKENS_PER_MESSAGE
        + count_text(str(content), model)
        + count_text(message.get("role", ""), model)
    )


def count_messages(messages, model: str = "gpt-4") -> int:
    """Counts a full message list the way the chat endpoint bills it."""
    return sum(count_message(m, model) for m in messages) + REPLY_PRIMING_TOKENS
