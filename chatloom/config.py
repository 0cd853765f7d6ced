"""Handles all user-facing configuration actions."""

import json
import os

from chatloom.globals import CONFIG_FILE
from chatloom.models import GPT3_TURBO, GPT4, Model, ModelsList, SessionConfig


class Config:
    """User-facing configuration variables"""

    def __init__(self, config_file: str = CONFIG_FILE):
        self.config_file = config_file
        self.models: dict[str, dict] = {
            "default": {
                "name": GPT4.name,
                "endpoint": GPT4.endpoint,
                "token_limit": GPT4.token_limit,
            },
            "fallback": {
                "name": GPT3_TURBO.name,
                "endpoint": GPT3_TURBO.endpoint,
                "token_limit": GPT3_TURBO.token_limit,
            },
        }
        # Default values
        self.system_prompt: str = "You are a helpful assistant."
        self.session_name: str = "ChatLoom"
        self.include_functions: bool = False
        self.stream_response: bool = True
        self.function_result_max_tokens: int = 8192
        self.response_max_tokens: int = 1024
        self.chunk_token_limit: int = 4000
        self.retry_max_elapsed: float = 60.0
        self.refresh_rate: int = 30
        self.rich_code_theme: str = "monokai"

    def _persisted(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if k != "config_file"}

    def save(self):
        """Saves any config changes to the config file."""
        os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self._persisted(), f, indent=2)

    def load(self):
        """Loads the config file."""
        if not os.path.exists(self.config_file):
            self.save()
        with open(self.config_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        for key, val in data.items():
            if key != "config_file":
                setattr(self, key, val)

    def models_list(self) -> ModelsList:
        """The configured default/fallback pair for the model resolver"""
        return ModelsList(
            default=Model.from_dict(self.models["default"]),
            fallback=Model.from_dict(self.models["fallback"]),
        )

    def session_config(self, model: Model, session_id: str | None = None) -> SessionConfig:
        """
        Freezes the current settings into a SessionConfig for a new session.\n
        Without a session_id the result is a template with an empty id; new_session() assigns the real one.
        """
        return SessionConfig(
            prompt=self.system_prompt,
            session_id=session_id or "",
            model=model,
            name=self.session_name,
            include_functions=self.include_functions,
            stream_response=self.stream_response,
            function_result_max_tokens=self.function_result_max_tokens,
            response_max_tokens=self.response_max_tokens,
            chunk_token_limit=self.chunk_token_limit,
        )

    @property
    def model_name(self) -> str:
        """Returns the default model name"""
        return self.models["default"]["name"]

    @property
    def endpoint(self) -> str:
        """Returns the API endpoint of the default model"""
        return self.models["default"].get("endpoint", GPT4.endpoint)
