"""Command interactivity logic lives here."""

import re
import textwrap

import pyperclip
from keyring import set_password
from keyring.errors import KeyringError
from openai import OpenAI
from prompt_toolkit import prompt
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import HTML

from chatloom.errors import ChatLoomError, PersistenceCorrupt
from chatloom.globals import (
    COMPLETER_STYLER,
    CONSOLE,
    KEYRING_SERVICE,
    USER_NAME,
    log_exception,
)
from chatloom.resolver import fetch_catalog, resolve
from chatloom.session_manager import SessionManager, new_session

# Returned by a command that ends the foreground loop
QUIT = object()

CODE_BLOCK_PATTERN = re.compile(r"```[^\S\n]*\w*[^\S\n]*\n(.*?)\n[^\S\n]*```", re.DOTALL)


class CLIController:
    """Handles and supports all command input"""

    def __init__(self, config, manager: SessionManager, panel, ui):
        self.config = config
        self.manager = manager
        self.panel = panel
        self.ui = ui
        self.interface = None

        # Command dict
        self.commands = {
            "!h": self.spawn_help_chart,
            "!help": self.spawn_help_chart,
            "!s": self.save_session,
            "!save": self.save_session,
            "!l": self.load_session,
            "!load": self.load_session,
            "!sessions": self.list_sessions,
            "!delete": self.delete_session,
            "!reset": self.reset_session,
            "!models": self.list_models,
            "!key": self.set_api_key,
            "!config": self.spawn_settings_chart,
            "!cp": self.copy_last_snippet,
            "!clear": CONSOLE.clear,
            "!q": self.quit,
            "!quit": self.quit,
        }

        self.session_prompt = HTML("Enter a session id<seagreen>:</seagreen> ")

    # <~~HELPERS~~>
    def _prompt_wrapper(
        self, prefix, cancel_msg="Canceled.", allow_empty=False, **kwargs
    ) -> str | None:
        """Prompt_toolkit wrapper for validating input."""
        try:
            # **kwargs passes completers, styles, history, etc automatically
            user_input = prompt(prefix, **kwargs)
            stripped = user_input.strip()
            if not stripped and not allow_empty:
                CONSOLE.print("[dim]No input detected.[/dim]\n")
                return None
            return stripped
        except (KeyboardInterrupt, EOFError):
            CONSOLE.print(f"[dim]{cancel_msg}[/dim]\n")
            return None

    def _session_completer(self) -> WordCompleter:
        """Session completion helper for the session manager"""
        return WordCompleter(
            self.manager.find_sessions(),
            ignore_case=True,
            sentence=True,
        )

    @property
    def session(self):
        return self.interface.session

    def is_command(self, user_input: str) -> bool:
        return user_input.strip().lower() in self.commands

    def handle_input(self, user_input: str):
        """Parse user input for a command & handle it"""
        cmd = user_input.strip().lower()
        if cmd not in self.commands:
            return False  # No command detected
        if cmd in ("!l", "!load", "!reset") and self.session.transactions:
            choice = self._prompt_wrapper(
                HTML("Save first? (<seagreen>y</seagreen>/<ansired>N</ansired>): "),
                allow_empty=True,
            )
            if choice is None:
                return True
            if choice.lower() in ("y", "yes"):
                self.save_session()
        try:
            result = self.commands[cmd]()
        except Exception as e:
            log_exception(e, f"Error in command {cmd}")
            self.panel.spawn_error_panel("COMMAND ERROR", f"{e}")
            return True
        return QUIT if result is QUIT else True

    def set_interface(self, chat_interface):
        """Setter to inject the Chat instance."""
        self.interface = chat_interface

    def quit(self):
        return QUIT

    # <~~CHARTS~~>
    def spawn_help_chart(self):
        """Markdown usage chart."""
        CONSOLE.print(self.ui.help_chart_constructor())
        CONSOLE.print()

    def spawn_settings_chart(self):
        """Markdown settings chart."""
        CONSOLE.print(self.ui.settings_chart_constructor(self.session))
        CONSOLE.print()

    # <~~MODELS & KEYS~~>
    def list_models(self):
        """Lists the account's models and shows which one the configured pair resolves to."""
        models = self.config.models_list()
        try:
            catalog = fetch_catalog(self.interface.client)
            resolved = resolve(catalog, models.default, models.fallback)
        except ChatLoomError as e:
            log_exception(e, "Error in list_models()")
            self.panel.spawn_error_panel("MODEL ERROR", f"{e}")
            return

        CONSOLE.print("[cyan]Available models:[/cyan]")
        for name in sorted(catalog):
            tag = ""
            if name == models.default.name:
                tag = "(default)"
            elif name == models.fallback.name:
                tag = "(fallback)"
            CONSOLE.print(f"• {name} {tag}", highlight=False)
        CONSOLE.print(f"[green]Resolved model:[/green] {resolved.name}")
        if resolved.name != self.session.config.model.name:
            CONSOLE.print(
                "[dim]The active session keeps its model. Use [cyan]!reset[/cyan] to start one with the resolved model.[/dim]"
            )
        CONSOLE.print()

    def set_api_key(self):
        """Stores an API key in the OS keychain and rebuilds the API client."""
        new_key = self._prompt_wrapper(HTML("Enter an API key<seagreen>:</seagreen> "))
        if not new_key:
            return
        try:
            set_password(KEYRING_SERVICE, USER_NAME, new_key)
            CONSOLE.print("[green]API key updated.[/green]\n")
        except (KeyringError, ValueError, RuntimeError, OSError) as e:
            self.panel.spawn_error_panel(
                "KEYRING ERROR",
                f"Could not save to your OS keychain: {e}\nUsing key for this session only.",
            )
        self.interface.set_client(
            OpenAI(
                base_url=self.session.config.model.endpoint,
                api_key=new_key,
                max_retries=0,
            )
        )

    # <~~SESSION MANAGEMENT~~>
    def save_session(self):
        """Saves the active session under its id"""
        try:
            file_path = self.interface.save()
            CONSOLE.print(f"[green]Session saved in:[/green] {file_path}\n")
        except OSError as e:
            log_exception(e, f"Error in save_session() - session: {self.session.session_id}")
            self.panel.spawn_error_panel("ERROR SAVING", f"{e}")

    def load_session(self):
        """Loads a session by id and prints its history"""
        if not self.list_sessions():
            return
        session_id = self._prompt_wrapper(
            self.session_prompt,
            completer=self._session_completer(),
            style=COMPLETER_STYLER,
        )
        if not session_id:
            return

        try:
            session = self.manager.read(session_id)
        except FileNotFoundError:
            CONSOLE.print(f"[red]No session file found:[/red] {session_id}\n")
            return
        except PersistenceCorrupt as e:
            log_exception(e, "Error in load_session()")
            CONSOLE.print(f"[red]Corrupted session file:[/red] {session_id}\n")
            return
        self.interface.set_session(session)
        self.panel.render_history(session)
        CONSOLE.print(f"[green]Session loaded:[/green] {session_id}")
        self.panel.spawn_status_panel(session)

    def delete_session(self):
        """Session deleter. Also lists files for user friendliness."""
        if not self.list_sessions():
            return
        session_id = self._prompt_wrapper(
            self.session_prompt,
            completer=self._session_completer(),
            style=COMPLETER_STYLER,
        )
        if not session_id:
            return

        try:
            self.manager.delete(session_id)
            CONSOLE.print(f"[green]Session deleted:[/green] {session_id}\n")
        except FileNotFoundError:
            CONSOLE.print(f"[red]No session file found:[/red] {session_id}\n")
        except OSError as e:
            log_exception(e, f"Error in delete_session() - session: {session_id}")
            self.panel.spawn_error_panel("DELETION ERROR", f"{e}")

    def reset_session(self):
        """Starts a fresh session with the active session's settings."""
        self.interface.set_session(new_session(self.session.config))
        CONSOLE.print("[green]The current session has been reset successfully.[/green]")
        self.panel.spawn_status_panel(self.session)

    def list_sessions(self):
        """Fetches the session list and displays it."""
        sessions = self.manager.find_sessions()

        if not sessions:
            CONSOLE.print("[dim]No saved sessions found.[/dim]\n")
            return

        CONSOLE.print("[cyan]Available sessions:[/cyan]")
        for s in sessions:
            CONSOLE.print(f"• {s}", highlight=False)
        CONSOLE.print()
        return 1

    # <~~CLIPBOARD~~>
    def copy_last_snippet(self):
        """Copies all Markdown code blocks from the last reply"""
        reply = self.session.store.last_reply()
        if not reply:
            CONSOLE.print("[dim]No assistant response found to copy from.[/dim]\n")
            return

        blocks = CODE_BLOCK_PATTERN.findall(reply)
        if not blocks:
            CONSOLE.print("[dim]No code blocks found in the last response.[/dim]\n")
            return

        code = "\n\n".join(textwrap.dedent(b) for b in blocks).strip()

        try:
            pyperclip.copy(code)
            self.panel.spawn_copy_panel(code)
        except Exception as e:
            log_exception(e, "Error in copy_last_snippet()")
            self.panel.spawn_error_panel(
                "CLIPBOARD ERROR", f"Could not copy to clipboard: {e}"
            )
