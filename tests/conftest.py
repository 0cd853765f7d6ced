"""Shared fixtures. Token counting is patched so tests never download tiktoken files."""

from unittest.mock import patch

import pytest

from chatloom import models


class CharEncoding:
    """One token per character"""

    def encode(self, text, disallowed_special=()):
        return list(text)


@pytest.fixture
def char_tokens():
    with patch("chatloom.tokens.get_encoding", return_value=CharEncoding()):
        yield


@pytest.fixture(autouse=True)
def reset_session_ids():
    """Session ids are process-wide; start every test from a clean slate."""
    with patch.object(models, "_last_id", 0):
        yield
