from unittest.mock import patch

import pytest

from chatloom import tokens


@pytest.mark.usefixtures("char_tokens")
def test_message_counts_include_framing():
    message = {"role": "user", "content": "Hello"}
    assert tokens.count_message(message) == tokens.TOKENS_PER_MESSAGE + 5 + 4
    assert tokens.count_messages([message, message]) == 2 * 12 + tokens.REPLY_PRIMING_TOKENS


@pytest.mark.usefixtures("char_tokens")
def test_missing_content_counts_as_empty():
    assert tokens.count_message({"role": "assistant", "content": None}) == 3 + 9


@patch("chatloom.tokens.tiktoken")
def test_unknown_models_fall_back_to_cl100k(mock_tiktoken):
    mock_tiktoken.encoding_for_model.side_effect = KeyError("my-local-model")
    with patch.dict(tokens._ENCODING_CACHE, clear=True):
        encoding = tokens.get_encoding("my-local-model")
        assert tokens.get_encoding("my-local-model") is encoding

    mock_tiktoken.get_encoding.assert_called_once_with("cl100k_base")
