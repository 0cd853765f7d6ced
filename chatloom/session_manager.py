"""Session state, session I/O and the last-session pointer."""

import json
import logging
import os
import queue
import tempfile
import threading
from dataclasses import replace

from chatloom.chunker import split
from chatloom.dispatch import (
    DispatchFailed,
    EnterProcessing,
    ExitProcessing,
    ProcessResponse,
    spawn_dispatch,
)
from chatloom.errors import DispatchInFlight, PersistenceCorrupt
from chatloom.functions import tool_declarations
from chatloom.models import SessionConfig, generate_session_id
from chatloom.request_builder import build, reserved_overhead
from chatloom.tokens import count_text
from chatloom.transactions import (
    Request,
    Transaction,
    TransactionStore,
    transaction_from_dict,
)
from chatloom.transport import Transport

LAST_SESSION_FILE = "last_session.txt"


def strip_json(session_id: str) -> str:
    """Session ids are accepted with or without the .json extension"""
    return session_id.removesuffix(".json")


class Session:
    """
    Owns the transaction log and the session config.
    - Mutated by request_response() and process_response_handler() only
    - At most one dispatch in flight at a time
    """

    def __init__(self, config: SessionConfig, transactions=(), on_change=None):
        self.config: SessionConfig = config
        self.store = TransactionStore(list(transactions), on_change)
        self.in_flight: bool = False
        self.cancel: threading.Event | None = None
        self.last_error: Exception | None = None
        self.token_cache: list[tuple[int, int] | None] = []

    @property
    def transactions(self) -> list[Transaction]:
        return self.store.transactions

    @property
    def session_id(self) -> str:
        return self.config.session_id

    def __eq__(self, other) -> bool:
        if not isinstance(other, Session):
            return NotImplemented
        return self.config == other.config and self.transactions == other.transactions

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, transactions={len(self.transactions)})"

    # <~~REQUESTS~~>
    def prepare_request(self, text: str) -> Request:
        """Chunks the input and builds the next request, without touching the log."""
        tools = tool_declarations() if self.config.include_functions else None
        chunks = split(
            text,
            self.config.chunk_token_limit,
            self.config.model.token_limit,
            reserved_overhead=reserved_overhead(self.config, tools),
            model=self.config.model.name,
        )
        return build(
            chunks, self.config, history=self.store.conversation(), catalog=tools
        )

    def request_response(
        self, text: str, transport: Transport, outbox: queue.Queue
    ) -> threading.Thread:
        """Appends the Request and hands it to a background dispatch task."""
        if self.in_flight:
            raise DispatchInFlight(
                f"Session {self.session_id} already has a request in flight."
            )
        request = self.prepare_request(text)
        self.store.append(request)
        self.in_flight = True
        self.last_error = None
        self.cancel = threading.Event()
        return spawn_dispatch(transport, request, outbox, self.cancel)

    def process_response_handler(self, message):
        """Applies one message from a dispatch task to the log."""
        if isinstance(message, ProcessResponse):
            self.store.append(message.transaction)
        elif isinstance(message, DispatchFailed):
            self.last_error = message.error
        elif isinstance(message, ExitProcessing):
            if self.store.has_open_stream:
                self.store.close_stream()
            self.in_flight = False
        elif isinstance(message, EnterProcessing):
            self.in_flight = True

    def cancel_dispatch(self):
        if self.cancel is not None:
            self.cancel.set()

    # <~~TOKENS~~>
    def count_tokens(self) -> int:
        """Counts and caches tokens of the rendered conversation."""
        messages = self.store.rendered_messages()
        cache = self.token_cache
        diff = len(messages) - len(cache)
        if diff > 0:
            cache.extend([None] * diff)
        elif diff < 0:
            del cache[len(messages) :]

        total = 0
        for i, (_, text) in enumerate(messages):
            text_hash = hash(text)
            cached = cache[i]
            if cached is None or cached[0] != text_hash:
                count = count_text(text, self.config.model.name)
                cache[i] = (text_hash, count)
                total += count
            else:
                total += cached[1]
        return total

    def count_turns(self) -> int:
        """Calculates and returns the turn number"""
        return sum(1 for t in self.transactions if isinstance(t, Request))

    # <~~SERIALIZATION~~>
    def to_dict(self) -> dict:
        return {
            "transactions": [t.to_dict() for t in self.transactions],
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            SessionConfig.from_dict(data["config"]),
            [transaction_from_dict(t) for t in data["transactions"]],
        )


class SessionManager:
    """Handles session-related I/O under a single sessions directory"""

    def __init__(self, sessions_dir: str):
        self.sessions_dir = sessions_dir

    def _json_helper(self, session_id: str) -> str:
        """JSON extension helper"""
        return os.path.join(self.sessions_dir, strip_json(session_id) + ".json")

    def save(self, session: Session) -> str:
        """Writes the session to a temp file, then moves it over the session file."""
        os.makedirs(self.sessions_dir, exist_ok=True)
        file_path = self._json_helper(session.session_id)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.sessions_dir, prefix=".session-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f, indent=2)
            os.replace(tmp_path, file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return file_path

    def read(self, session_id: str) -> Session:
        """Reads a session file. Raises FileNotFoundError or PersistenceCorrupt."""
        file_path = self._json_helper(session_id)
        with open(file_path, "r", encoding="utf-8") as f:
            try:
                return Session.from_dict(json.load(f))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise PersistenceCorrupt(f"Corrupted session file {file_path}: {e}") from e

    def load(self, session_id: str, config: SessionConfig | None = None) -> Session:
        """
        Loads a session by id.\n
        A missing or corrupt file gives a fresh, empty session instead of an error.
        config is the template for that fresh session; it gets a new session id.
        """
        try:
            return self.read(session_id)
        except FileNotFoundError:
            logging.warning(f"No session file for '{session_id}', starting a new session.")
        except PersistenceCorrupt as e:
            logging.error(f"{e}. Starting a new session.")
        return new_session(config)

    def save_last_pointer(self, session_id: str):
        os.makedirs(self.sessions_dir, exist_ok=True)
        path = os.path.join(self.sessions_dir, LAST_SESSION_FILE)
        with open(path, "w", encoding="utf-8") as f:
            f.write(strip_json(session_id))

    def load_last_pointer(self) -> str | None:
        path = os.path.join(self.sessions_dir, LAST_SESSION_FILE)
        try:
            with open(path, "r", encoding="utf-8") as f:
                session_id = f.read().strip()
        except FileNotFoundError:
            return None
        return session_id or None

    def load_last(self, config: SessionConfig | None = None) -> Session:
        """Continues the most recent session, or starts a new one if there is none."""
        session_id = self.load_last_pointer()
        if session_id is None:
            return new_session(config)
        return self.load(session_id, config)

    def find_sessions(self) -> list[str]:
        """Lists the ids of all sessions that exist within the sessions directory"""
        if not os.path.isdir(self.sessions_dir):
            return []
        return sorted(
            f[: -len(".json")] for f in os.listdir(self.sessions_dir) if f.endswith(".json")
        )

    def delete(self, session_id: str):
        """Used to remove a session file"""
        os.remove(self._json_helper(session_id))
        if self.load_last_pointer() == strip_json(session_id):
            os.remove(os.path.join(self.sessions_dir, LAST_SESSION_FILE))


def new_session(config: SessionConfig | None = None) -> Session:
    """A fresh, empty session built from a config template and a new id."""
    if config is None:
        return Session(SessionConfig())
    return Session(replace(config, session_id=generate_session_id()))
