"""
The conversation log.

- Tagged transaction types: Request, Response, StreamResponse
- fold(), the pure rule for merging stream fragments into the log
- TransactionStore, which owns a log and signals its consumer on every change
"""

import logging
import warnings
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, ClassVar, Sequence

from chatloom.errors import StreamProtocolViolation


@dataclass(frozen=True)
class ToolCall:
    index: int = 0
    id: str | None = None
    name: str = ""
    arguments: str = ""

    def describe(self) -> str:
        return f"[function call] {self.name}({self.arguments})"


@dataclass(frozen=True)
class Choice:
    """One choice of a reply. In a stream fragment every field is a delta."""

    index: int = 0
    role: str | None = None
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None

    def text(self) -> str:
        """Content for display and history; falls back to a description of tool calls."""
        if self.content:
            return self.content
        return "\n".join(call.describe() for call in self.tool_calls)

    @classmethod
    def from_dict(cls, data: dict) -> "Choice":
        return cls(
            index=data.get("index", 0),
            role=data.get("role"),
            content=data.get("content"),
            tool_calls=tuple(ToolCall(**t) for t in data.get("tool_calls", ())),
            finish_reason=data.get("finish_reason"),
        )

    @classmethod
    def from_api(cls, choice, payload) -> "Choice":
        """Builds a Choice from an openai choice and its message (or delta) object."""
        calls = []
        for position, call in enumerate(getattr(payload, "tool_calls", None) or []):
            function = getattr(call, "function", None)
            calls.append(
                ToolCall(
                    index=getattr(call, "index", None) or position,
                    id=getattr(call, "id", None),
                    name=getattr(function, "name", None) or "",
                    arguments=getattr(function, "arguments", None) or "",
                )
            )
        return cls(
            index=getattr(choice, "index", 0) or 0,
            role=getattr(payload, "role", None),
            content=getattr(payload, "content", None),
            tool_calls=tuple(calls),
            finish_reason=getattr(choice, "finish_reason", None),
        )


@dataclass(frozen=True)
class Request:
    """The exact outbound request. input_count is the number of trailing user chunks."""

    type: ClassVar[str] = "request"

    model: str
    messages: tuple[dict, ...]
    tools: tuple[dict, ...] | None = None
    stream: bool = True
    max_tokens: int | None = None
    input_count: int = 0

    def api_kwargs(self) -> dict:
        """Keyword arguments for client.chat.completions.create()"""
        kwargs: dict = {
            "model": self.model,
            "messages": [dict(m) for m in self.messages],
            "stream": self.stream,
        }
        if self.tools:
            kwargs["tools"] = list(self.tools)
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    def input_messages(self) -> tuple[dict, ...]:
        if not self.input_count:
            return ()
        return self.messages[-self.input_count :]

    def to_dict(self) -> dict:
        return {"type": self.type, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "Request":
        tools = data.get("tools")
        return cls(
            model=data["model"],
            messages=tuple(data["messages"]),
            tools=tuple(tools) if tools is not None else None,
            stream=data.get("stream", True),
            max_tokens=data.get("max_tokens"),
            input_count=data.get("input_count", 0),
        )


@dataclass(frozen=True)
class Response:
    """A complete, non-streamed reply"""

    type: ClassVar[str] = "response"

    id: str = ""
    model: str = ""
    created: int = 0
    choices: tuple[Choice, ...] = ()

    def to_dict(self) -> dict:
        return {"type": self.type, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "Response":
        return cls(
            id=data.get("id", ""),
            model=data.get("model", ""),
            created=data.get("created", 0),
            choices=tuple(Choice.from_dict(c) for c in data.get("choices", ())),
        )

    @classmethod
    def from_completion(cls, completion) -> "Response":
        return cls(
            id=completion.id,
            model=completion.model,
            created=completion.created,
            choices=tuple(Choice.from_api(c, c.message) for c in completion.choices),
        )


@dataclass(frozen=True)
class StreamResponse:
    """
    A streamed reply.\n
    Fresh from the transport it is a single fragment of deltas; in the log it holds
    everything folded so far, and closed is set once the reply is complete.
    """

    type: ClassVar[str] = "stream_response"

    id: str = ""
    model: str = ""
    created: int = 0
    choices: tuple[Choice, ...] = ()
    closed: bool = False

    @property
    def finished(self) -> bool:
        """True once every choice has a finish reason."""
        return bool(self.choices) and all(c.finish_reason for c in self.choices)

    def to_dict(self) -> dict:
        return {"type": self.type, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "StreamResponse":
        return cls(
            id=data.get("id", ""),
            model=data.get("model", ""),
            created=data.get("created", 0),
            choices=tuple(Choice.from_dict(c) for c in data.get("choices", ())),
            closed=data.get("closed", True),
        )

    @classmethod
    def from_chunk(cls, chunk) -> "StreamResponse":
        return cls(
            id=chunk.id,
            model=chunk.model,
            created=chunk.created,
            choices=tuple(Choice.from_api(c, c.delta) for c in chunk.choices),
        )


Transaction = Request | Response | StreamResponse

TRANSACTION_TYPES: dict[str, type] = {
    t.type: t for t in (Request, Response, StreamResponse)
}


def transaction_from_dict(data: dict) -> Transaction:
    kind = data.get("type")
    if kind not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {kind!r}")
    return TRANSACTION_TYPES[kind].from_dict(data)


# <~~FOLDING~~>
def _merge_tool_calls(
    current: tuple[ToolCall, ...], deltas: tuple[ToolCall, ...]
) -> tuple[ToolCall, ...]:
    calls = {c.index: c for c in current}
    for delta in deltas:
        existing = calls.get(delta.index)
        if existing is None:
            calls[delta.index] = delta
        else:
            calls[delta.index] = replace(
                existing,
                id=existing.id or delta.id,
                name=existing.name + delta.name,
                arguments=existing.arguments + delta.arguments,
            )
    return tuple(calls[i] for i in sorted(calls))


def _merge_choice(current: Choice | None, delta: Choice) -> Choice:
    if current is None:
        return delta
    content = current.content
    if delta.content is not None:
        content = (content or "") + delta.content
    return replace(
        current,
        role=current.role or delta.role,
        content=content,
        tool_calls=_merge_tool_calls(current.tool_calls, delta.tool_calls),
        finish_reason=delta.finish_reason or current.finish_reason,
    )


def merge_fragment(target: StreamResponse, fragment: StreamResponse) -> StreamResponse:
    """Folds one fragment's choice deltas into an open stream transaction."""
    choices = {c.index: c for c in target.choices}
    for delta in fragment.choices:
        choices[delta.index] = _merge_choice(choices.get(delta.index), delta)
    merged = replace(
        target,
        id=target.id or fragment.id,
        model=target.model or fragment.model,
        created=target.created or fragment.created,
        choices=tuple(choices[i] for i in sorted(choices)),
    )
    return replace(merged, closed=merged.finished)


def fold(log: Sequence[Transaction], transaction: Transaction) -> list[Transaction]:
    """
    Returns a new log with the transaction applied.

    Requests and Responses are appended. A StreamResponse fragment is merged into the
    last transaction when that is an open StreamResponse; otherwise it opens a new one.
    """
    new_log = list(log)
    if not isinstance(transaction, StreamResponse):
        new_log.append(transaction)
        return new_log

    last = new_log[-1] if new_log else None
    if isinstance(last, StreamResponse):
        if not last.closed:
            new_log[-1] = merge_fragment(last, transaction)
            return new_log
        warnings.warn(
            StreamProtocolViolation(
                f"Fragment for '{transaction.id}' arrived after the stream closed; "
                "opening a new transaction."
            ),
            stacklevel=2,
        )
        logging.warning(
            f"Stream fragment after terminal finish reason (stream '{last.id}')."
        )
    new_log.append(replace(transaction, closed=transaction.finished))
    return new_log


def close_stream(log: Sequence[Transaction]) -> list[Transaction]:
    """Marks a trailing open StreamResponse closed, used when the fragment sequence ends."""
    new_log = list(log)
    if new_log and isinstance(new_log[-1], StreamResponse) and not new_log[-1].closed:
        new_log[-1] = replace(new_log[-1], closed=True)
    return new_log


def conversation(log: Sequence[Transaction]) -> list[dict]:
    """
    Renders the log back into chat messages for the next request.\n
    The latest Request already carries all earlier turns, so only the replies after it are added.
    """
    messages: list[dict] = []
    for transaction in log:
        if isinstance(transaction, Request):
            messages = [dict(m) for m in transaction.messages if m.get("role") != "system"]
        elif transaction.choices:
            text = transaction.choices[0].text()
            if text:
                messages.append({"role": "assistant", "content": text})
    return messages


@dataclass
class TransactionStore:
    """Owns a transaction log and notifies on_change after every mutation."""

    transactions: list[Transaction] = field(default_factory=list)
    on_change: Callable[[], None] | None = None

    def append(self, transaction: Transaction):
        self.transactions = fold(self.transactions, transaction)
        self._changed()

    def close_stream(self):
        self.transactions = close_stream(self.transactions)
        self._changed()

    @property
    def last(self) -> Transaction | None:
        return self.transactions[-1] if self.transactions else None

    @property
    def has_open_stream(self) -> bool:
        last = self.last
        return isinstance(last, StreamResponse) and not last.closed

    def conversation(self) -> list[dict]:
        return conversation(self.transactions)

    def rendered_messages(self) -> list[tuple[str, str]]:
        """(role, text) pairs for display, in conversation order."""
        rendered: list[tuple[str, str]] = []
        for transaction in self.transactions:
            if isinstance(transaction, Request):
                for m in transaction.input_messages():
                    rendered.append((m.get("role", "user"), str(m.get("content") or "")))
            elif transaction.choices:
                choice = transaction.choices[0]
                rendered.append((choice.role or "assistant", choice.text()))
        return rendered

    def last_reply(self) -> str | None:
        """Text of the most recent model reply"""
        for transaction in reversed(self.transactions):
            if isinstance(transaction, (Response, StreamResponse)) and transaction.choices:
                return transaction.choices[0].text()
        return None

    def _changed(self):
        if self.on_change:
            self.on_change()
