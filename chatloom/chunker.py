"""Splits user input into chunks that each fit a model's token budget."""

import logging
import re
import warnings

from chatloom.errors import ChunkOverflow
from chatloom.tokens import TOKENS_PER_MESSAGE, REPLY_PRIMING_TOKENS, count_text

# A word plus the whitespace that follows it, or a run of leading whitespace
WORD_PATTERN = re.compile(r"\S+\s*|\s+")

# Framing for a single user message in an otherwise empty request
DEFAULT_RESERVED_OVERHEAD = TOKENS_PER_MESSAGE + REPLY_PRIMING_TOKENS + 1


def token_budget(
    max_tokens_per_chunk: int,
    model_token_limit: int,
    reserved_overhead: int = DEFAULT_RESERVED_OVERHEAD,
) -> int:
    """The per-chunk budget: the smaller of the chunk cap and what the model has left."""
    budget = min(max_tokens_per_chunk, model_token_limit - reserved_overhead)
    if budget <= 0:
        raise ValueError(
            f"No room for input: chunk cap {max_tokens_per_chunk}, model limit "
            f"{model_token_limit}, reserved overhead {reserved_overhead}."
        )
    return budget


def split(
    text: str,
    max_tokens_per_chunk: int,
    model_token_limit: int,
    *,
    reserved_overhead: int = DEFAULT_RESERVED_OVERHEAD,
    model: str = "gpt-4",
) -> list[str]:
    """
    Splits text into an ordered list of chunks, each encoding under the token budget.

    Chunks are cut on line boundaries, preferring the last paragraph break.
    A line that cannot fit alone is cut between words. A single word that still
    cannot fit is emitted on its own and reported as a ChunkOverflow warning.
    Joining the chunks gives back the input unchanged.
    """
    if not text:
        return []
    budget = token_budget(max_tokens_per_chunk, model_token_limit, reserved_overhead)

    def count(s: str) -> int:
        return count_text(s, model)

    chunks: list[str] = []
    pending: list[str] = []

    for unit in _units(text, count, budget):
        if count(unit) > budget:
            if pending:
                chunks.append("".join(pending))
                pending = []
            _report_overflow(count(unit), budget)
            chunks.append(unit)
            continue

        if pending and count("".join(pending) + unit) > budget:
            cut = _paragraph_cut(pending)
            chunks.append("".join(pending[:cut]))
            pending = pending[cut:]
            # The carried-over tail may still leave no room for this unit
            if pending and count("".join(pending) + unit) > budget:
                chunks.append("".join(pending))
                pending = []
        pending.append(unit)

    if pending:
        chunks.append("".join(pending))
    return chunks


def _units(text: str, count, budget: int):
    """Yields lines, breaking any line that is too large on its own into words."""
    for line in text.splitlines(keepends=True):
        if count(line) <= budget:
            yield line
        else:
            yield from WORD_PATTERN.findall(line)


def _paragraph_cut(pending: list[str]) -> int:
    """Index just past the last blank line in pending, or the full length if there is none."""
    for i in range(len(pending) - 1, 0, -1):
        if not pending[i - 1].strip() and pending[i - 1].endswith(("\n", "\r")):
            return i
    return len(pending)


def _report_overflow(tokens: int, budget: int):
    overflow = ChunkOverflow(tokens, budget)
    logging.warning(str(overflow))
    warnings.warn(overflow, stacklevel=3)
