"""Builds and spawns UI objects. UIConstructor and GlobalPanels live here."""

import os
import textwrap

from rich import box
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from chatloom import __version__
from chatloom.globals import CONFIG_FILE, CONSOLE, LOG_DIR, SESSIONS_DIR

# Context usage thresholds (percent) for the status panel
CONTEXT_WARN = 50
CONTEXT_CRITICAL = 80


def context_color(percentage: float) -> str:
    if percentage >= CONTEXT_CRITICAL:
        return "red"
    if percentage >= CONTEXT_WARN:
        return "yellow"
    return "dim"


class UIConstructor:
    """Constructs and returns various UI objects"""

    def __init__(self, config):
        self.config = config

    def _rule_panel(self, renderable, title: str, color: str) -> Panel:
        """Full-width panel with horizontal rules only, used for every chat turn."""
        return Panel(
            renderable,
            title=Text(title, style=f"bold {color}"),
            title_align="left",
            border_style=color,
            style="default",
            box=box.HORIZONTALS,
            padding=(0, 0),
        )

    def markdown(self, content: str) -> Markdown:
        return Markdown(content, code_theme=self.config.rich_code_theme)

    def response_panel_constructor(self, content: str = "") -> Panel:
        """Live panel for a reply that is still streaming"""
        return self._rule_panel(self.markdown(content), "💬 Response", "green")

    def user_panel_constructor(self, content: str) -> Panel:
        # Plain text, user input is not rendered as markdown
        return self._rule_panel(Text(content), "🌐 You", "blue")

    def assistant_panel_constructor(self, content: str) -> Panel:
        return self._rule_panel(self.markdown(content), "💬 Response", "green")

    def status_panel_constructor(self, session) -> Panel:
        context = session.count_tokens()
        limit = session.config.model.token_limit
        percentage = round((context / limit) * 100, 1)

        status_text = Text.assemble(
            " Context: ",
            (f"{percentage}%", context_color(percentage)),
            f" ({context}/{limit})",
            f" | Turn: {session.count_turns()}",
            f" | Model: {session.config.model.name}",
            f" | Session: {session.session_id}",
        )
        return Panel(status_text, border_style="dim", style="dim", expand=False)

    def intro_panel_constructor(self, session) -> Panel:
        fields = (
            ("Model", session.config.model.name),
            ("Session", session.session_id),
            ("System Prompt", session.config.prompt or "(none)"),
            ("Streaming", "on" if session.config.stream_response else "off"),
            ("Functions", "on" if session.config.include_functions else "off"),
        )
        intro_text = Text()
        for i, (label, value) in enumerate(fields):
            if i:
                intro_text.append("\n")
            intro_text.append(f"{label}: ", style="bold sandy_brown")
            intro_text.append(str(value), style="italic" if label == "System Prompt" else "")
        return self._rule_panel(intro_text, f"🧶 ChatLoom {__version__}", "medium_orchid")

    def error_panel_constructor(self, error: str, exception: str) -> Panel:
        return Panel(
            exception,
            title=Text(f"❌ {error}", style="bold red"),
            title_align="left",
            border_style="red",
            expand=False,
        )

    def copy_panel_constructor(self, blocks: str) -> Panel:
        wrapped = f"### The following code has been copied to your clipboard\n```\n{blocks}\n```"
        return self._rule_panel(self.markdown(wrapped), "📋 Clipboard Sync", "orange1")

    def help_chart_constructor(self) -> Markdown:
        return Markdown(
            textwrap.dedent("""
            | **Session Management** | *Session management commands* |
            | --- | ----------- |
            | `!s` or `!save` | Save the current session. |
            | `!l` or `!load` | Load a saved session by id, including a scrollable history. |
            | `!sessions` | List all saved sessions. |
            | `!delete` | Delete a saved session. |
            | `!reset` | Start a fresh session with the current settings. |
            | `!clear` | Clear the terminal window. |
            | `!q` or `!quit` | Save and exit ChatLoom. |

            | **Models & Configuration** | *Model and API commands* |
            | --- | ----------- |
            | `!models` | List the models your account can use and re-resolve the session model. |
            | `!key` | Set an API key. Your API key is stored in your OS keychain. |
            | `!config` | Display your current configuration and default directories. |
            | `!cp` | Copy all code blocks from the last response. |
            | | |
            | `Ctrl + C` | Cancel the request, save the session, and exit. |
            """)
        )

    def settings_chart_constructor(self, session) -> Markdown:
        rows = (
            ("Default Model", self.config.models["default"]["name"]),
            ("Fallback Model", self.config.models["fallback"]["name"]),
            ("Session Model", session.config.model.name),
            ("System Prompt", self.config.system_prompt),
            ("Streaming", self.config.stream_response),
            ("Functions", self.config.include_functions),
            ("Chunk Token Limit", self.config.chunk_token_limit),
            ("Response Max Tokens", self.config.response_max_tokens),
            ("Retry Ceiling", f"{self.config.retry_max_elapsed}s"),
        )
        table = "\n".join(f"| **{label}**: | *{value}* |" for label, value in rows)
        paths = textwrap.dedent(f"""
            - Your configuration file is located at: `{CONFIG_FILE}`
            - Your session files are located at:     `{SESSIONS_DIR}`
            - Your error logs are located at:        `{LOG_DIR}`
            - The current working directory is:      `{os.getcwd()}`
            """)
        return Markdown(
            "| **Current Settings** | *Your current persistent settings* |\n"
            "| --- | ----------- |\n"
            f"{table}\n{paths}"
        )


class GlobalPanels:
    """Global panel spawner"""

    def __init__(self, config, ui: UIConstructor):
        self.config = config
        self.ui: UIConstructor = ui

    def spawn_intro_panel(self, session):
        """Simple welcome panel, prints on application launch."""
        CONSOLE.print(self.ui.intro_panel_constructor(session))
        CONSOLE.print(Markdown("Type `!h` for a list of commands."))
        CONSOLE.print()

    def spawn_status_panel(self, session):
        CONSOLE.print(self.ui.status_panel_constructor(session))
        CONSOLE.print()

    def spawn_error_panel(self, error: str, exception: str):
        """Error panel template, used by the controller and main()"""
        CONSOLE.print(self.ui.error_panel_constructor(error, exception))
        CONSOLE.print()

    def spawn_copy_panel(self, blocks: str):
        CONSOLE.print(self.ui.copy_panel_constructor(blocks))
        CONSOLE.print()

    def render_history(self, session):
        """Replays a loaded session's conversation as a scrollable history."""
        for role, content in session.store.rendered_messages():
            if not content.strip():
                continue
            if role == "user":
                CONSOLE.print()
                CONSOLE.print(self.ui.user_panel_constructor(content))
                CONSOLE.print()
            elif role == "assistant":
                CONSOLE.print(self.ui.assistant_panel_constructor(content))
