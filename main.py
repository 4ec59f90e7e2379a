"""
Bedrock Orchestrator - a coding agent loop powered by Amazon Bedrock.
Console runner built with Rich.
"""

import asyncio
import argparse
import logging
import os
import signal
import sys
from typing import Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from backend import LocalBackend
from bedrock_service import BedrockService, BedrockError, GenerationConfig
from config import app_config, agent_config, model_config, get_context_window, get_model_name
from orchestrator import (
    AgentEvent,
    AgentLoop,
    ChatThread,
    CheckpointManager,
    CheckpointNotFoundError,
    ContextCompressor,
    StreamCoordinator,
    ThreadFrozenError,
    ToolExecutionGate,
    WorkspaceExecutor,
)
from sessions import ThreadRecord, ThreadStore
from tools import TOOL_DEFINITIONS

# Configure logging to file so it doesn't interleave with the console output
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a coding agent working inside the project at {root}.
Use the tools to inspect and change files and to run commands. Read a file before editing it.
Make the smallest change that does the job and report what you did when you are finished."""

TOOL_ICONS = {
    "read_file":      "\U0001f4c4 ",
    "write_file":     "✏️ ",
    "edit_file":      "\U0001f527 ",
    "delete_file":    "\U0001f5d1 ",
    "run_command":    "▶ ",
    "list_directory": "\U0001f4c2 ",
}

HELP_TEXT = """[bold]Commands[/bold]
  /checkpoints          list checkpoints of this thread
  /rollback <id>        restore the workspace to a checkpoint (id prefix is enough)
  /handoff              continue in a fresh thread after a context handoff
  /reset-compression    reset the reported compression level
  /new                  start a new thread
  /quit                 save and exit"""


class ConsoleRunner:
    """Wires service, backend, store and AgentLoop to a Rich console."""

    def __init__(self, working_directory: str, thread_name: Optional[str] = None):
        self.working_directory = os.path.abspath(working_directory)
        self.console = Console()
        self.store = ThreadStore()
        self.backend = LocalBackend(self.working_directory)
        self.service = BedrockService()
        self.thread_name = thread_name
        self.agent_loop: Optional[AgentLoop] = None
        self._streaming = False

    # ============================================================
    # Thread lifecycle
    # ============================================================

    def _build_loop(self, thread: ChatThread, checkpoints: Optional[CheckpointManager] = None) -> AgentLoop:
        checkpoints = checkpoints or CheckpointManager(self.backend)
        gate = ToolExecutionGate(WorkspaceExecutor(self.backend), checkpoints)
        return AgentLoop(
            thread=thread,
            coordinator=StreamCoordinator(self.service),
            gate=gate,
            compressor=ContextCompressor(),
            checkpoints=checkpoints,
            workspace_root=self.working_directory,
            system_prompt=SYSTEM_PROMPT.format(root=self.working_directory),
            tools=TOOL_DEFINITIONS,
            max_loops=agent_config.max_loops,
            max_history_messages=agent_config.max_history_messages,
            context_limit=get_context_window(self.service.model_id),
            generation_config=GenerationConfig.from_model_config(),
            on_event=self._handle_event,
        )

    def _load_or_create_thread(self) -> None:
        record = None
        if self.thread_name:
            record = self.store.find_by_name(self.working_directory, self.thread_name)
        else:
            record = self.store.get_latest(self.working_directory)

        if record is not None:
            thread = record.to_thread()
            checkpoints = record.restore_checkpoints(CheckpointManager(self.backend))
            self.agent_loop = self._build_loop(thread, checkpoints)
            self.agent_loop.usage.input_tokens = record.token_usage.get("input_tokens", 0)
            self.agent_loop.usage.output_tokens = record.token_usage.get("output_tokens", 0)
            logger.info(f"Resumed thread: {record.name} ({record.thread_id})")
            self.console.print(f"[dim]Resumed thread '{rich_escape(record.name)}' "
                               f"({record.message_count} messages)[/dim]")
        else:
            self.agent_loop = self._build_loop(ChatThread(workspace=self.working_directory))
            logger.info("Created new thread")

    def _save_thread(self) -> None:
        if self.agent_loop is None or not self.agent_loop.thread.messages:
            return
        record = ThreadRecord.capture(
            self.agent_loop.thread,
            self.agent_loop.checkpoints,
            name=self.thread_name,
            model_id=self.service.model_id,
            token_usage={
                "input_tokens": self.agent_loop.usage.input_tokens,
                "output_tokens": self.agent_loop.usage.output_tokens,
            },
        )
        try:
            self.store.save(record)
        except OSError as e:
            logger.error(f"Failed to save thread: {e}")

    # ============================================================
    # Events
    # ============================================================

    async def _handle_event(self, event: AgentEvent) -> None:
        data = event.data or {}

        if event.type == "text":
            self._streaming = True
            self.console.print(event.content, end="", markup=False, highlight=False)
            return

        if self._streaming:
            self.console.print()
            self._streaming = False

        if event.type == "tool_pending":
            await self._ask_approval(data)
        elif event.type == "tool_running":
            icon = TOOL_ICONS.get(data.get("name", ""), "• ")
            self.console.print(Text(f"   {icon}{data.get('name')} {_short_args(data.get('arguments'))}", style="cyan"))
        elif event.type == "tool_result":
            style = "green" if data.get("status") == "success" else "red"
            first_line = (event.content or "").strip().splitlines()[:1]
            self.console.print(Text(f"     → {first_line[0][:160] if first_line else '(no output)'}", style=style))
        elif event.type == "tool_rejected":
            self.console.print(Text(f"     ✗ {data.get('name')} {data.get('reason')}", style="yellow"))
        elif event.type == "checkpoint_created":
            if data.get("kind") != "user_message":
                self.console.print(f"   [dim]checkpoint {data.get('checkpoint_id', '')[:8]}: "
                                   f"{rich_escape(event.content)}[/dim]")
        elif event.type == "compression":
            self.console.print(f"[dim]context compression: {rich_escape(event.content)} "
                               f"(saved {data.get('saved_percent', 0)}%)[/dim]")
        elif event.type == "handoff":
            self.console.print("[bold yellow]Context budget exhausted.[/bold yellow] "
                               "Type /handoff to continue in a new thread.")
        elif event.type == "limit_reached":
            self.console.print(f"[yellow]{rich_escape(event.content)}[/yellow]")
        elif event.type == "error":
            self.console.print(f"[bold red]✗ {rich_escape(event.content)}[/bold red]")

    async def _ask_approval(self, data: dict) -> None:
        name = data.get("name", "")
        self.console.print(Text(f"   {TOOL_ICONS.get(name, '')}{name} ({data.get('category')})", style="bold magenta"))
        self.console.print(Text(f"     {_short_args(data.get('arguments'), 400)}", style="dim"))
        loop = asyncio.get_event_loop()
        approved = await loop.run_in_executor(None, lambda: Confirm.ask("     Allow?", default=True))
        if approved:
            self.agent_loop.approve()
        else:
            self.agent_loop.reject()

    # ============================================================
    # Commands
    # ============================================================

    def _handle_command(self, command: str) -> bool:
        """Run a slash command. Returns False when the runner should exit."""
        parts = command.split()
        name = parts[0].lower()

        if name in ("/quit", "/exit"):
            return False
        if name == "/help":
            self.console.print(HELP_TEXT)
        elif name == "/checkpoints":
            table = Table(show_header=True, header_style="bold")
            table.add_column("id")
            table.add_column("kind")
            table.add_column("files")
            table.add_column("description")
            for cp in self.agent_loop.checkpoints.list():
                table.add_row(cp.id[:8], cp.kind, str(len(cp.snapshots)), cp.description)
            self.console.print(table)
        elif name == "/rollback":
            if len(parts) < 2:
                self.console.print("[yellow]Usage: /rollback <checkpoint-id>[/yellow]")
            else:
                self._rollback(parts[1])
        elif name == "/handoff":
            try:
                fresh = self.agent_loop.start_handoff_thread()
            except Exception as e:
                self.console.print(f"[red]{rich_escape(str(e))}[/red]")
            else:
                self._save_thread()
                self.agent_loop = self._build_loop(fresh)
                self.console.print("[green]Started a new thread from the handoff summary.[/green]")
        elif name == "/reset-compression":
            self.agent_loop.reset_compression()
            self.console.print("[dim]Compression level reset.[/dim]")
        elif name == "/new":
            self._save_thread()
            self.thread_name = None
            self.agent_loop = self._build_loop(ChatThread(workspace=self.working_directory))
            self.console.print("[dim]New thread.[/dim]")
        else:
            self.console.print(f"[yellow]Unknown command: {rich_escape(name)}[/yellow]")
        return True

    def _rollback(self, prefix: str) -> None:
        matches = [cp for cp in self.agent_loop.checkpoints.list() if cp.id.startswith(prefix)]
        if len(matches) != 1:
            self.console.print(f"[yellow]{'No' if not matches else 'Ambiguous'} checkpoint '{rich_escape(prefix)}'[/yellow]")
            return
        try:
            report = self.agent_loop.checkpoints.restore_to(matches[0].id)
        except CheckpointNotFoundError as e:
            self.console.print(f"[red]{rich_escape(str(e))}[/red]")
            return
        for path in report.restored_files:
            self.console.print(f"   [green]✓[/green] {rich_escape(path)}")
        for err in report.errors:
            self.console.print(f"   [red]✗ {rich_escape(err['path'])}: {rich_escape(err['error'])}[/red]")

    # ============================================================
    # Main loop
    # ============================================================

    async def run(self) -> None:
        self._load_or_create_thread()
        self.console.print(f"[bold]{app_config.title}[/bold]  [dim]{get_model_name(model_config.model_id)} "
                           f"· {rich_escape(self.working_directory)}[/dim]")
        self.console.print("[dim]Type /help for commands, Ctrl+C to stop a running turn.[/dim]")

        loop = asyncio.get_event_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported on this platform")

        while True:
            text = await loop.run_in_executor(None, lambda: Prompt.ask("\n[bold blue]>[/bold blue]"))
            text = (text or "").strip()
            if not text:
                continue
            if text.startswith("/"):
                if not self._handle_command(text):
                    break
                continue
            try:
                await self.agent_loop.send_user_message(text)
            except ThreadFrozenError as e:
                self.console.print(f"[yellow]{rich_escape(str(e))}. Type /handoff.[/yellow]")
            except Exception as e:
                logger.exception("Turn failed")
                self.console.print(f"[bold red]✗ {rich_escape(str(e))}[/bold red]")
            if self._streaming:
                self.console.print()
                self._streaming = False
            self._save_thread()

        self._save_thread()

    def _on_interrupt(self) -> None:
        if self.agent_loop is not None and self.agent_loop.running:
            self.agent_loop.abort()
        else:
            raise KeyboardInterrupt


def _short_args(arguments: Optional[dict], limit: int = 120) -> str:
    if not arguments:
        return ""
    text = ", ".join(f"{k}={v!r}" for k, v in arguments.items())
    return text if len(text) <= limit else text[:limit] + "..."


# ============================================================
# Entry Point
# ============================================================

def main():
    parser = argparse.ArgumentParser(
        description="Bedrock Orchestrator - Coding Agent Loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                      Run in current directory
  python main.py -d ~/my-project      Run in a specific project directory
  python main.py --thread refactor    Resume (or start) the thread named 'refactor'
        """,
    )
    parser.add_argument(
        "-d", "--dir", "--directory",
        dest="directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument(
        "--thread",
        default=None,
        help="Name of the thread to resume or create",
    )

    args = parser.parse_args()

    working_dir = os.path.abspath(args.directory)
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    try:
        runner = ConsoleRunner(working_dir, thread_name=args.thread)
    except BedrockError as e:
        print(f"Error: failed to initialize Bedrock: {e}")
        sys.exit(1)

    try:
        asyncio.run(runner.run())
    except (KeyboardInterrupt, EOFError):
        runner._save_thread()


if __name__ == "__main__":
    main()
