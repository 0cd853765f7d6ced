"""Model descriptors and the per-session configuration record."""

import threading
import time
from dataclasses import asdict, dataclass, field, replace

OPENAI_ENDPOINT = "https://api.openai.com/v1"


@dataclass(frozen=True)
class Model:
    name: str
    endpoint: str = OPENAI_ENDPOINT
    token_limit: int = 8192

    @classmethod
    def from_dict(cls, data: dict) -> "Model":
        return cls(
            name=data["name"],
            endpoint=data.get("endpoint", OPENAI_ENDPOINT),
            token_limit=int(data.get("token_limit", 8192)),
        )


@dataclass(frozen=True)
class ModelsList:
    """The configured default/fallback pair, resolved once per session"""

    default: Model
    fallback: Model


# Known models
GPT4 = Model("gpt-4", OPENAI_ENDPOINT, 8192)
GPT4_32K = Model("gpt-4-32k", OPENAI_ENDPOINT, 32768)
GPT4_TURBO = Model("gpt-4-turbo", OPENAI_ENDPOINT, 128000)
GPT4O = Model("gpt-4o", OPENAI_ENDPOINT, 128000)
GPT3_TURBO = Model("gpt-3.5-turbo", OPENAI_ENDPOINT, 16385)

KNOWN_MODELS: dict[str, Model] = {
    m.name: m for m in (GPT4, GPT4_32K, GPT4_TURBO, GPT4O, GPT3_TURBO)
}

# Session id generation state, shared by every session created in this process
_ID_LOCK = threading.Lock()
_last_id: int = 0


def generate_session_id(clock=time.time, sleep=time.sleep) -> str:
    """
    Returns the current Unix time in seconds as a session id.\n
    Ids handed out by this process are at least one second apart; a caller that
    collides with the previous id waits for the next second.
    """
    global _last_id
    with _ID_LOCK:
        now = clock()
        candidate = max(int(now), _last_id + 1)
        if candidate > now:
            sleep(candidate - now)
        _last_id = candidate
        return str(candidate)


@dataclass(frozen=True)
class SessionConfig:
    """Fixed for the life of a session. Serialized alongside the transaction log."""

    prompt: str = ""
    session_id: str = field(default_factory=generate_session_id)
    model: Model = GPT4
    name: str = "ChatLoom"
    include_functions: bool = False
    stream_response: bool = True
    function_result_max_tokens: int = 8192
    response_max_tokens: int = 1024
    chunk_token_limit: int = 4000

    def with_model(self, model: Model) -> "SessionConfig":
        return replace(self, model=model)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionConfig":
        values = dict(data)
        values["model"] = Model.from_dict(values["model"])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in values.items() if k in known})
