"""
'Mock and drive' tests for chat.py and the command controller.

- Imitates the OpenAI client, the keychain and the user's typing
- Redirects the config file and the sessions directory into tmp_path
- Starts the application and exits
"""

import io
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from chatloom import chat
from chatloom.cli_controller import QUIT
from chatloom.config import Config
from chatloom.globals import COMMAND_DESCRIPTIONS
from chatloom.models import GPT4O, Model, SessionConfig
from chatloom.session_manager import Session, SessionManager
from chatloom.transactions import Choice, Response
from fakes import api_chunk


@pytest.fixture
def fake_client():
    client = MagicMock()
    client.models.list.return_value = [
        SimpleNamespace(id="gpt-4"),
        SimpleNamespace(id="gpt-3.5-turbo"),
    ]
    client.chat.completions.create.side_effect = lambda **kwargs: iter(
        [api_chunk("Hello", role="assistant"), api_chunk("!", finish="stop")]
    )
    return client


@pytest.fixture
def app(tmp_path, fake_client, char_tokens):
    """Patches everything main() touches outside of tmp_path."""
    sessions_dir = tmp_path / "sessions"
    config_file = tmp_path / "config" / "settings.json"
    with (
        patch("chatloom.chat.SESSIONS_DIR", str(sessions_dir)),
        patch("chatloom.chat.Config", side_effect=lambda: Config(str(config_file))),
        patch("chatloom.chat.OpenAI", return_value=fake_client) as mock_openai,
        patch("chatloom.chat.retrieve_key", return_value="fake-api-key"),
        patch("chatloom.chat.ensure_app_dirs"),
        patch("chatloom.chat.init_logger"),
        patch("chatloom.chat.setup_keyring_backend"),
    ):
        yield SimpleNamespace(
            sessions_dir=sessions_dir,
            client=fake_client,
            openai=mock_openai,
        )


@pytest.fixture
def interface(tmp_path, char_tokens):
    """A Chat instance wired to a fresh session, for driving commands directly."""
    config = Config(str(tmp_path / "settings.json"))
    manager = SessionManager(str(tmp_path / "sessions"))
    session = Session(SessionConfig(session_id="1700000000"))
    client = MagicMock()
    client.models.list.return_value = [SimpleNamespace(id="gpt-3.5-turbo")]
    return chat.Chat(config, manager, session, client)


# 1. Application


@patch("chatloom.chat.root_prompt")
def test_application_startup_and_quit(mock_prompt, app):
    """Starts chat.py, types '!q' immediately, and shuts down cleanly."""
    mock_prompt.return_value = "!q"

    assert chat.main(["-n"]) == 0

    mock_prompt.assert_called()
    app.openai.assert_called_with(
        base_url="https://api.openai.com/v1", api_key="fake-api-key", max_retries=0
    )
    # Nothing was said, so nothing was saved
    assert not app.sessions_dir.exists() or not list(app.sessions_dir.glob("*.json"))


@patch("chatloom.chat.root_prompt")
def test_one_turn_is_streamed_and_saved(mock_prompt, app):
    mock_prompt.side_effect = ["hello", "!q"]

    assert chat.main([]) == 0

    saved = list(app.sessions_dir.glob("*.json"))
    assert len(saved) == 1
    manager = SessionManager(str(app.sessions_dir))
    session = manager.read(saved[0].stem)
    assert session.store.rendered_messages() == [("user", "hello"), ("assistant", "Hello!")]
    assert manager.load_last_pointer() == session.session_id
    kwargs = app.client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4"
    assert kwargs["stream"] is True


def test_batch_then_print_session(app, monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("hello"))
    assert chat.main(["-b"]) == 0
    assert "Hello!" in capsys.readouterr().out

    assert chat.main(["-p"]) == 0
    out = capsys.readouterr().out
    assert "You: hello" in out
    assert "GPT: Hello!" in out


def test_api_failure_exits_with_an_error(app, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("hello"))
    app.client.chat.completions.create.side_effect = ValueError("bad payload")
    assert chat.main(["-b"]) == 1


@patch("chatloom.chat.root_prompt")
def test_unexpected_submit_error_keeps_the_session(mock_prompt, app):
    """An error in one turn is reported, the loop goes on, and quitting still saves."""
    mock_prompt.side_effect = ["hello", "second", "!q"]
    real_submit = chat.Chat.submit

    def flaky_submit(self, text, render=True):
        if text == "second":
            raise RuntimeError("encoding download failed")
        return real_submit(self, text, render)

    with patch.object(chat.Chat, "submit", flaky_submit):
        assert chat.main([]) == 0

    assert mock_prompt.call_count == 3
    saved = list(app.sessions_dir.glob("*.json"))
    assert len(saved) == 1
    session = SessionManager(str(app.sessions_dir)).read(saved[0].stem)
    assert session.store.rendered_messages() == [("user", "hello"), ("assistant", "Hello!")]


def test_batch_interrupt_saves_the_session(app, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("hello"))

    with patch.object(chat.Chat, "await_response", side_effect=KeyboardInterrupt):
        assert chat.main(["-b"]) == 130

    saved = list(app.sessions_dir.glob("*.json"))
    assert len(saved) == 1
    session = SessionManager(str(app.sessions_dir)).read(saved[0].stem)
    assert session.store.rendered_messages()[0] == ("user", "hello")


def test_unavailable_models_are_a_critical_error(app):
    app.client.models.list.return_value = [SimpleNamespace(id="davinci")]
    assert chat.main(["-n"]) == 1


def test_list_models(app, capsys):
    assert chat.main(["-l"]) == 0
    out = capsys.readouterr().out
    assert "gpt-4" in out
    assert "gpt-3.5-turbo" in out


def test_manual_model_skips_resolution(tmp_path):
    client = MagicMock()
    config = Config(str(tmp_path / "settings.json"))

    args = chat.parse_args(["-m", "gpt-4o"])
    assert chat.pick_model(args, config, client) == GPT4O

    args = chat.parse_args(["-m", "my-local-model"])
    assert chat.pick_model(args, config, client) == Model("my-local-model", config.endpoint)
    client.models.list.assert_not_called()


def test_parse_args():
    args = chat.parse_args(["-s", "1700000000", "-f"])
    assert args.session == "1700000000"
    assert args.include_functions
    assert chat.parse_args(["-p"]).print_session == "last-session"
    assert chat.parse_args(["-p", "42"]).print_session == "42"


# 2. Commands


def test_quit_and_unknown_commands(interface):
    controller = interface.controller
    assert controller.handle_input("!q") is QUIT
    assert controller.handle_input(" !QUIT ") is QUIT
    assert not controller.is_command("!nope")
    assert controller.handle_input("!nope") is False


def test_save_command(interface, tmp_path):
    interface.session.store.append(
        Response(id="r1", choices=(Choice(role="assistant", content="hi"),))
    )
    assert interface.controller.handle_input("!s") is True
    assert (tmp_path / "sessions" / "1700000000.json").exists()
    assert interface.manager.load_last_pointer() == "1700000000"


def test_reset_command_starts_a_new_session(interface):
    assert interface.controller.handle_input("!reset") is True
    assert interface.session.session_id != "1700000000"
    assert interface.session.transactions == []


@patch("chatloom.cli_controller.prompt")
def test_load_command(mock_prompt, interface):
    saved = Session(
        SessionConfig(session_id="1600000000"),
        [Response(id="r1", choices=(Choice(role="assistant", content="from disk"),))],
    )
    interface.manager.save(saved)
    mock_prompt.return_value = "1600000000"

    interface.controller.handle_input("!l")

    assert interface.session == saved
    assert interface.session.store.on_change is not None


@patch("chatloom.cli_controller.pyperclip.copy")
def test_copy_command_takes_code_blocks(mock_copy, interface):
    reply = "Try this:\n```python\nprint(1)\n```\nand\n```\necho hi\n```"
    interface.session.store.append(
        Response(id="r1", choices=(Choice(role="assistant", content=reply),))
    )

    interface.controller.handle_input("!cp")

    mock_copy.assert_called_once_with("print(1)\n\necho hi")


def test_models_command_reports_the_resolution(interface, capsys):
    interface.controller.handle_input("!models")
    out = capsys.readouterr().out
    assert "Resolved model: gpt-3.5-turbo" in out


def test_command_errors_are_contained(interface):
    interface.client.models.list.side_effect = RuntimeError("boom")
    assert interface.controller.handle_input("!models") is True


def test_every_command_has_a_completion(interface):
    assert set(COMMAND_DESCRIPTIONS) == set(interface.controller.commands)
