"""Rich CLI interface for the Jarvis chat client.

Features:
- Rich markdown rendering
- Streaming token output into a live panel
- Slash commands (/new, /chats, /open, /context, /help, /quit, etc.)
- Optional wake-word voice input
"""

from __future__ import annotations

import asyncio

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from jarvis.config import JarvisConfig, get_jarvis_home
from jarvis.core.errors import TransportError
from jarvis.core.orchestrator import ChatCallback, ChatOrchestrator, ConversationSession
from jarvis.core.types import ConversationRecord, DisplayMessage, Role, SessionStatus
from jarvis.voice.controller import VoiceController, VoiceState

console = Console()


BANNER = r"""
   _                  _
  (_) __ _ _ ____   _(_)___
  | |/ _` | '__\ \ / / / __|
  | | (_| | |   \ V /| \__ \
 _/ |\__,_|_|    \_/ |_|___/
|__/
"""

HELP_TEXT = """
**Slash Commands:**
- `/help` - Show this help message
- `/new` - Start a new chat
- `/chats` - List saved chats
- `/open <n|id>` - Open a chat from the list (number or id)
- `/delete <n|id>` - Delete a chat
- `/context` - Show context statistics for the current chat
- `/summarize` - Summarize the current chat now
- `/voice` - Start or stop speaking a message (when voice input is enabled)
- `/quit` or `/exit` - Exit Jarvis
"""


def _render(message: DisplayMessage) -> Panel:
    """Render one message as a panel."""
    if message.role == Role.ERROR:
        return Panel(
            Text(message.content, style="red"),
            title="[bold red]Error[/bold red]",
            border_style="red",
        )
    if message.role == Role.USER:
        return Panel(Text(message.content), title="[bold green]You[/bold green]", border_style="green")
    if message.pending:
        return Panel(
            Text(message.content, style="dim italic"),
            title="[bold blue]Jarvis[/bold blue]",
            border_style="blue",
        )
    return Panel(
        Markdown(message.content),
        title="[bold blue]Jarvis[/bold blue]",
        border_style="blue",
        padding=(1, 2),
    )


class CLIChatCallback(ChatCallback):
    """Pushes streamed text into the live panel while a reply is in flight."""

    def __init__(self) -> None:
        self.live: Live | None = None

    async def on_stream_delta(self, session: ConversationSession, index: int, delta: str) -> None:
        if self.live is not None:
            self.live.update(_render(session.turns[index]))


class CLI:
    """Interactive CLI for the Jarvis chat client."""

    def __init__(self, orchestrator: ChatOrchestrator, config: JarvisConfig) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.callback = CLIChatCallback()
        orchestrator.callback = self.callback
        self._listing: list[ConversationRecord] = []
        self.voice: VoiceController | None = None

        # Setup prompt history
        history_dir = get_jarvis_home() / "history"
        history_dir.mkdir(parents=True, exist_ok=True)
        self.prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(history_dir / "cli_input.txt")),
        )

    async def run(self) -> None:
        """Main CLI loop."""
        self._print_banner()

        with patch_stdout():
            while True:
                try:
                    user_input = await asyncio.get_event_loop().run_in_executor(
                        None,
                        lambda: self.prompt_session.prompt("\n> "),
                    )
                except (EOFError, KeyboardInterrupt):
                    console.print("\n[dim]Goodbye![/dim]")
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue

                # Handle slash commands
                if user_input.startswith("/"):
                    should_continue = await self._handle_command(user_input)
                    if not should_continue:
                        break
                    continue

                await self._send_typed(user_input)

        await self.orchestrator.wait_idle()

    async def _send_typed(self, user_text: str) -> None:
        """Send typed text, silencing the wake-word listener meanwhile."""
        voice = self.voice
        resume = voice is not None and voice.state != VoiceState.IDLE
        if resume:
            await voice.pause()
        try:
            await self._process_message(user_text)
        finally:
            if resume:
                await voice.start()

    async def send_voice_message(self, text: str) -> None:
        """Send a finalized transcript from the voice controller."""
        console.print(_render(DisplayMessage(role=Role.USER, content=text)))
        await self._process_message(text)

    async def _process_message(self, user_text: str) -> None:
        """Send a message and stream the reply into a live panel."""
        console.print()
        session = self.orchestrator.session
        sent = False
        try:
            with Live(
                _render(DisplayMessage(role=Role.ASSISTANT, content="Thinking...", pending=True)),
                console=console,
                refresh_per_second=12,
            ) as live:
                self.callback.live = live
                sent = await self.orchestrator.send_message(user_text)
                if sent and session.turns:
                    live.update(_render(session.turns[-1]))
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")
        finally:
            self.callback.live = None

        if not sent:
            console.print("[yellow]Busy, please wait for the current reply.[/yellow]")
        elif session.error:
            console.print(f"[red]{session.error}[/red]")

    async def _handle_command(self, command: str) -> bool:
        """Handle a slash command. Returns False if should exit."""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd in ("/quit", "/exit", "/q"):
            console.print("[dim]Goodbye![/dim]")
            return False

        elif cmd == "/help":
            console.print(Markdown(HELP_TEXT))

        elif cmd == "/new":
            await self.orchestrator.clear_current_chat()
            console.print("[green]Started a new chat[/green]")

        elif cmd == "/chats":
            await self._list_chats()

        elif cmd == "/open":
            conversation_id = self._resolve(arg)
            if conversation_id:
                await self.orchestrator.select_conversation(conversation_id)
                self._show_session()

        elif cmd == "/delete":
            conversation_id = self._resolve(arg)
            if conversation_id:
                try:
                    deleted = await self.orchestrator.delete_conversation(conversation_id)
                except TransportError as e:
                    console.print(f"[red]Failed to delete chat: {e.message}[/red]")
                else:
                    if deleted:
                        console.print("[green]Chat deleted[/green]")
                    else:
                        console.print("[yellow]Chat not found[/yellow]")

        elif cmd == "/context":
            self._show_context()

        elif cmd == "/summarize":
            if await self.orchestrator.force_summary():
                console.print("[green]Context summary updated[/green]")
            else:
                console.print("[yellow]Nothing to summarize[/yellow]")

        elif cmd == "/voice":
            if self.voice is None:
                console.print("[yellow]Voice input is not enabled[/yellow]")
            else:
                await self.voice.toggle()
                console.print(f"[dim]Voice: {self.voice.state.value}[/dim]")

        else:
            console.print(f"[red]Unknown command: {cmd}[/red]")
            console.print("[dim]Type /help for available commands[/dim]")

        return True

    async def _list_chats(self) -> None:
        try:
            self._listing = await self.orchestrator.list_conversations()
        except TransportError as e:
            console.print(f"[red]Failed to load chats: {e.message}[/red]")
            return

        if not self._listing:
            console.print("[dim]No saved chats[/dim]")
            return

        current = self.orchestrator.conversation_id
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Updated", style="dim")
        for i, record in enumerate(self._listing, start=1):
            marker = " *" if record.id == current else ""
            updated = record.updated_at or record.created_at
            table.add_row(str(i), record.title + marker, updated.strftime("%Y-%m-%d %H:%M"))
        console.print(table)

    def _resolve(self, arg: str) -> str | None:
        """Map a list number or a raw id to a conversation id."""
        if not arg:
            console.print("[dim]Usage: /open <n|id>, /delete <n|id>[/dim]")
            return None
        if arg.isdigit():
            index = int(arg) - 1
            if 0 <= index < len(self._listing):
                return self._listing[index].id
            console.print("[red]No such chat number. Run /chats first.[/red]")
            return None
        return arg

    def _show_session(self) -> None:
        session = self.orchestrator.session
        if session.status == SessionStatus.ERROR:
            console.print(f"[red]{session.error}[/red]")
            return
        console.print(f"[bold cyan]{session.title}[/bold cyan]")
        for message in session.turns:
            console.print(_render(message))

    def _show_context(self) -> None:
        stats = self.orchestrator.context.get_stats()
        table = Table(show_header=False, box=None)
        table.add_column(style="dim")
        table.add_column()
        for key, value in stats.items():
            if key == "summary":
                continue
            table.add_row(key, str(value))
        console.print(table)
        if stats["summary"]:
            console.print(Panel(Markdown(stats["summary"]), title="Summary", border_style="cyan"))

    def _print_banner(self) -> None:
        """Print the startup banner."""
        mode = self.config.backend.mode
        console.print(
            Panel(
                Text.from_markup(
                    f"[bold cyan]{BANNER}[/bold cyan]\n"
                    f"  [dim]Model:[/dim] [bold]{self.config.models.default}[/bold]\n"
                    f"  [dim]Backend:[/dim] [bold]{mode}[/bold]\n"
                    f"  [dim]Type /help for commands, /quit to exit[/dim]"
                ),
                border_style="cyan",
            )
        )
