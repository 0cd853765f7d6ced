#!/usr/bin/env python3

# <~~~~~~~~>
#  CHATLOOM
# <~~~~~~~~>

import argparse
import queue
import sys
import warnings

from openai import OpenAI
from rich.console import Group
from rich.live import Live

from chatloom.cli_controller import QUIT, CLIController
from chatloom.config import Config
from chatloom.errors import ChatLoomError, DispatchInFlight
from chatloom.globals import (
    CONSOLE,
    SESSIONS_DIR,
    ensure_app_dirs,
    init_logger,
    log_exception,
    retrieve_key,
    root_prompt,
    setup_keyring_backend,
    spinner_constructor,
)
from chatloom.models import KNOWN_MODELS, Model
from chatloom.resolver import fetch_catalog, select_model
from chatloom.session_manager import Session, SessionManager, new_session
from chatloom.transactions import Response, StreamResponse
from chatloom.transport import Transport
from chatloom.ui import GlobalPanels, UIConstructor


def make_client(endpoint: str) -> OpenAI:
    """OpenAI client with SDK retries off; Transport owns the retry policy."""
    return OpenAI(base_url=endpoint, api_key=retrieve_key(), max_retries=0)


class Chat:
    """Houses the foreground loop: prompt, dispatch, render, persist"""

    def __init__(
        self,
        config: Config,
        manager: SessionManager,
        session: Session,
        client: OpenAI,
    ):
        self.config: Config = config
        self.manager: SessionManager = manager
        self.client: OpenAI = client
        self.transport: Transport = Transport(
            client, max_elapsed=config.retry_max_elapsed
        )
        self.outbox: queue.Queue = queue.Queue()
        self.ui = UIConstructor(config)
        self.panel = GlobalPanels(config, self.ui)
        self.controller = CLIController(config, manager, self.panel, self.ui)
        self.controller.set_interface(self)
        # Set by the store's change signal, cleared once the live view is redrawn
        self.stale: bool = False
        self.session: Session = session
        self.set_session(session)

    # <~~STATE~~>
    def set_session(self, session: Session):
        """Swaps the active session and subscribes to its change signal."""
        self.session = session
        self.session.store.on_change = self._mark_stale

    def set_client(self, client: OpenAI):
        self.client = client
        self.transport = Transport(client, max_elapsed=self.config.retry_max_elapsed)

    def _mark_stale(self):
        self.stale = True

    def current_reply(self) -> str:
        """Text of the reply being received, if the latest transaction is one."""
        last = self.session.store.last
        if isinstance(last, (Response, StreamResponse)) and last.choices:
            return last.choices[0].text()
        return ""

    # <~~DISPATCH~~>
    def submit(self, text: str, render: bool = True) -> bool:
        """Sends one user input and waits for its reply. Returns False if nothing was sent."""
        self._settle()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                self.session.request_response(text, self.transport, self.outbox)
            except DispatchInFlight as e:
                self.panel.spawn_error_panel("BUSY", f"{e}")
                return False
            except ValueError as e:
                log_exception(e, "Error in submit()")
                self.panel.spawn_error_panel("INPUT ERROR", f"{e}")
                return False
            self.await_response(render)
        for w in caught:
            CONSOLE.print(f"[yellow]Warning:[/yellow] {w.message}")

        if self.session.last_error is not None:
            error = self.session.last_error
            log_exception(error, "Error in dispatch")
            self.panel.spawn_error_panel("API ERROR", f"{error}")
        elif render:
            self.panel.spawn_status_panel(self.session)
        return True

    def await_response(self, render: bool = True):
        """Drains dispatch messages until the in-flight request is done."""
        if not render:
            self._drain()
            return
        with Live(
            Group(),
            console=CONSOLE,
            screen=False,
            refresh_per_second=self.config.refresh_rate,
        ) as live:

            def redraw():
                live.update(self.ui.response_panel_constructor(self.current_reply()))

            self._drain(redraw)

    def _drain(self, redraw=None):
        timeout = 1 / max(self.config.refresh_rate, 1)
        while self.session.in_flight:
            try:
                message = self.outbox.get(timeout=timeout)
            except queue.Empty:
                continue
            self.session.process_response_handler(message)
            if self.stale and redraw:
                redraw()
            self.stale = False

    def _settle(self):
        """Processes messages left behind by a dispatch whose wait was cut short."""
        while self.session.in_flight:
            try:
                message = self.outbox.get_nowait()
            except queue.Empty:
                return
            self.session.process_response_handler(message)

    # <~~SHUTDOWN~~>
    def save(self) -> str:
        """Saves the session and points the last-session file at it."""
        if self.session.store.has_open_stream:
            self.session.store.close_stream()
        path = self.manager.save(self.session)
        self.manager.save_last_pointer(self.session.session_id)
        return path

    def shutdown(self) -> int:
        """Cancels any dispatch and flushes the session. In-flight threads are abandoned."""
        self.session.cancel_dispatch()
        if not self.session.transactions:
            return 0
        try:
            path = self.save()
        except OSError as e:
            log_exception(e, "Error saving session on exit")
            self.panel.spawn_error_panel("ERROR SAVING", f"{e}")
            return 1
        CONSOLE.print(f"[green]Session saved in:[/green] {path}")
        return 0

    # <~~RUN~~>
    def run(self) -> int:
        """Helper function for running the application"""
        self.panel.spawn_intro_panel(self.session)
        if self.session.transactions:
            self.panel.render_history(self.session)
        while True:
            try:
                user_input = root_prompt()
            except (KeyboardInterrupt, EOFError):
                break
            if not user_input.strip():
                continue
            if self.controller.is_command(user_input):
                if self.controller.handle_input(user_input) is QUIT:
                    break
                continue
            CONSOLE.print()
            try:
                self.submit(user_input)
            except KeyboardInterrupt:
                CONSOLE.print("[dim]Request canceled.[/dim]")
                break
            except Exception as e:
                log_exception(e, "Error in submit()")
                self.panel.spawn_error_panel("ERROR", f"{e}")
                self.session.cancel_dispatch()
        status = self.shutdown()
        CONSOLE.print("[yellow]✨ Farewell![/yellow]\n")
        return status


# <~~MAIN FLOW~~>
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatloom", description="Interactive chat with GPT"
    )
    parser.add_argument("-n", "--new", action="store_true", help="Start a new chat session")
    parser.add_argument(
        "-s",
        "--session",
        metavar="SESSION_ID",
        help="Continue from a specified session file",
    )
    parser.add_argument(
        "-m",
        "--model",
        metavar="MODEL_NAME",
        help="Use this model instead of resolving the default/fallback pair",
    )
    parser.add_argument(
        "-f",
        "--include-functions",
        action="store_true",
        help="Include chat functions",
    )
    parser.add_argument(
        "-l",
        "--list-models",
        action="store_true",
        help="List the models the account has access to",
    )
    parser.add_argument(
        "-p",
        "--print-session",
        nargs="?",
        const="last-session",
        metavar="SESSION_ID",
        help="Print a session to stdout, defaulting to the last session",
    )
    parser.add_argument(
        "-b", "--batch", action="store_true", help="Respond to stdin and exit"
    )
    return parser.parse_args(argv)


def pick_model(args: argparse.Namespace, config: Config, client: OpenAI) -> Model:
    """A manual -m override skips catalog resolution entirely."""
    if args.model:
        return KNOWN_MODELS.get(args.model) or Model(args.model, config.endpoint)
    return select_model(client, config.models_list())


def open_session(
    args: argparse.Namespace, config: Config, manager: SessionManager, model: Model
) -> Session:
    template = config.session_config(model)
    if args.session:
        return manager.load(args.session, template)
    if args.new:
        return new_session(template)
    return manager.load_last(template)


def print_session(manager: SessionManager, session_id: str) -> int:
    if session_id == "last-session":
        session_id = manager.load_last_pointer()
        if session_id is None:
            CONSOLE.print("[dim]No last session recorded.[/dim]")
            return 1
    try:
        session = manager.read(session_id)
    except FileNotFoundError:
        CONSOLE.print(f"[red]No session file found:[/red] {session_id}")
        return 1
    except ChatLoomError as e:
        CONSOLE.print(f"[red]{e}[/red]")
        return 1
    for role, content in session.store.rendered_messages():
        if role == "user":
            CONSOLE.print(f"[bold blue]You:[/bold blue] {content}", highlight=False)
        elif role == "assistant":
            CONSOLE.print(f"[bold green]GPT:[/bold green] {content}", highlight=False)
    return 0


def list_models(client: OpenAI) -> int:
    for name in sorted(fetch_catalog(client)):
        CONSOLE.print(f"• {name}", highlight=False)
    return 0


def run_batch(chat: Chat) -> int:
    text = sys.stdin.read()
    if not text.strip():
        return 0
    try:
        chat.submit(text, render=False)
    except KeyboardInterrupt:
        CONSOLE.print("[dim]Request canceled.[/dim]")
        chat.shutdown()
        return 130
    if chat.session.last_error is not None:
        chat.shutdown()
        return 1
    print(chat.current_reply())
    return chat.shutdown()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        with Live(
            spinner_constructor("Launching ChatLoom..."),
            refresh_per_second=8,
            console=CONSOLE,
            transient=True,
        ):
            ensure_app_dirs()
            init_logger()
            setup_keyring_backend()
            config = Config()
            config.load()
            if args.include_functions:
                config.include_functions = True
            manager = SessionManager(SESSIONS_DIR)
            client = make_client(config.endpoint)

        if args.print_session:
            return print_session(manager, args.print_session)
        if args.list_models:
            return list_models(client)

        model = pick_model(args, config, client)
        if model.endpoint != config.endpoint:
            client = make_client(model.endpoint)
        session = open_session(args, config, manager, model)
        chat = Chat(config, manager, session, client)
        if args.batch:
            return run_batch(chat)
        return chat.run()
    except (KeyboardInterrupt, EOFError):
        CONSOLE.print("[yellow]✨ Farewell![/yellow]\n")
        return 0
    except Exception as e:
        log_exception(e, "Critical startup error")
        CONSOLE.print(UIConstructor(Config()).error_panel_constructor("CRITICAL ERROR", f"{e}"))
        return 1


if __name__ == "__main__":
    sys.exit(main())
