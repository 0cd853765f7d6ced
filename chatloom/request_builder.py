"""Turns chunked input plus the session configuration into a chat completion Request."""

import json
from typing import Sequence

from chatloom.functions import tool_declarations
from chatloom.models import SessionConfig
from chatloom.tokens import (
    REPLY_PRIMING_TOKENS,
    TOKENS_PER_MESSAGE,
    count_message,
    count_text,
)
from chatloom.transactions import Request


def reserved_overhead(config: SessionConfig, tools: Sequence[dict] | None = None) -> int:
    """
    Tokens a request spends before any user input:
    message framing, the system prompt, the tool catalog and the reply budget.
    """
    model = config.model.name
    overhead = TOKENS_PER_MESSAGE + REPLY_PRIMING_TOKENS + config.response_max_tokens
    if config.prompt:
        overhead += count_message({"role": "system", "content": config.prompt}, model)
    if tools:
        overhead += count_text(json.dumps(list(tools)), model)
    return overhead


def build(
    chunks: Sequence[str],
    config: SessionConfig,
    *,
    history: Sequence[dict] = (),
    catalog: Sequence[dict] | None = None,
) -> Request:
    """
    Builds the outbound request.

    Message order: system prompt (if any), prior conversation, then one user message
    per chunk. History is trimmed oldest-first until the request fits the model.
    Tools are attached only when the session includes functions.
    """
    tools = None
    if config.include_functions:
        tools = tuple(catalog if catalog is not None else tool_declarations())

    inputs = [{"role": "user", "content": chunk} for chunk in chunks]
    system = [{"role": "system", "content": config.prompt}] if config.prompt else []
    kept = _trim_history(history, inputs, config, tools)

    return Request(
        model=config.model.name,
        messages=tuple(system + kept + inputs),
        tools=tools,
        stream=config.stream_response,
        max_tokens=config.response_max_tokens,
        input_count=len(inputs),
    )


def _trim_history(
    history: Sequence[dict],
    inputs: list[dict],
    config: SessionConfig,
    tools: Sequence[dict] | None,
) -> list[dict]:
    """Prunes the oldest history messages when the context window is full"""
    model = config.model.name
    limit = config.model.token_limit - reserved_overhead(config, tools)
    used = sum(count_message(m, model) for m in inputs)
    costs = [count_message(m, model) for m in history]
    start = 0
    total = used + sum(costs)
    while total > limit and start < len(costs):
        total -= costs[start]
        start += 1
    return [dict(m) for m in history[start:]]
