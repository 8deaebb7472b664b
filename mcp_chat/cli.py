"""Command line entry points for mcp-chat."""

import asyncio
import json
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from mcp_chat import __version__
from mcp_chat.abort import cancel_task
from mcp_chat.client.api import ChatApiClient
from mcp_chat.client.session import ConversationSession, SessionStatus
from mcp_chat.config import Config, set_config
from mcp_chat.exceptions import ConfigurationError, DescriptorError
from mcp_chat.logging import configure_logging, get_logger
from mcp_chat.models import ToolDescriptor, Turn
from mcp_chat.tools.mcp import parse_descriptors

log = get_logger(__name__)

app = typer.Typer(help="mcp-chat - chat with a model that can call MCP tools", no_args_is_help=True)
console = Console()

EXIT_COMMANDS = {"/exit", "/quit"}


def _load_config(config_path: str, verbose: bool = False) -> Config:
    try:
        cfg = Config.load(config_path or None)
    except ConfigurationError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=2)
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def load_descriptor_file(path: Path) -> list[ToolDescriptor]:
    """Read tool provider descriptors from a JSON file.

    Accepts either a list of descriptors or ``{"mcpServers": [...]}``.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise DescriptorError(f"Cannot read tool provider file {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("mcpServers", [])
    return parse_descriptors(data)


class ConsoleRenderer:
    """Prints a session's turns as they grow."""

    def __init__(self, out: Console):
        self.out = out
        self._printed: dict[str, int] = {}

    def history(self, turns: list[Turn]) -> None:
        for turn in turns:
            if turn.role == "user":
                self.out.print(f"[bold cyan]you>[/bold cyan] {turn.text()}")
            elif turn.role == "assistant" and turn.text():
                self.out.print(Markdown(turn.text()))
            self._printed[turn.id] = len(turn.parts)
            self._printed[f"{turn.id}:text"] = len(turn.text())

    def update(self, session: ConversationSession) -> None:
        for turn in session.messages:
            if turn.role == "user":
                self._printed.setdefault(turn.id, len(turn.parts))
                continue
            seen = self._printed.get(turn.id, 0)
            text_seen = self._printed.get(f"{turn.id}:text", 0)
            text = turn.text()
            if len(text) > text_seen:
                self.out.print(text[text_seen:], end="", markup=False, highlight=False)
                self._printed[f"{turn.id}:text"] = len(text)
            for part in turn.parts[seen:]:
                if part.type == "tool-invocation":
                    self.out.print(f"\n[dim]-> {part.tool_name}({json.dumps(part.args)})[/dim]")
                elif part.type == "tool-result":
                    style = "red" if part.is_error else "dim"
                    self.out.print(f"[{style}]<- {part.tool_name}: {str(part.result)[:200]}[/{style}]")
            self._printed[turn.id] = len(turn.parts)


async def _wait_interruptible(session: ConversationSession) -> bool:
    """Wait for the in-flight response; Ctrl-C stops it instead of exiting.

    Returns True when the response was stopped.
    """
    loop = asyncio.get_running_loop()
    interrupted = asyncio.Event()
    previous = signal.getsignal(signal.SIGINT)
    try:
        loop.add_signal_handler(signal.SIGINT, interrupted.set)
    except (NotImplementedError, RuntimeError):
        await session.wait()
        return False

    wait_task = asyncio.create_task(session.wait())
    interrupt_task = asyncio.create_task(interrupted.wait())
    try:
        done, _ = await asyncio.wait(
            {wait_task, interrupt_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if wait_task in done:
            return False
        await session.stop()
        await cancel_task(wait_task)
        return True
    finally:
        await cancel_task(interrupt_task)
        loop.remove_signal_handler(signal.SIGINT)
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


async def _chat_loop(
    cfg: Config,
    chat_id: str,
    model: str,
    user_id: str,
    descriptors: list[ToolDescriptor],
    base_url: str,
) -> None:
    renderer = ConsoleRenderer(console)
    api = ChatApiClient(base_url=base_url or cfg.client.base_url)
    session = ConversationSession(
        user_id=user_id,
        api=api,
        navigate=lambda route: console.print(f"[dim]{route}[/dim]"),
        notify_error=lambda message: console.print(f"[bold red]{message}[/bold red]"),
        on_change=renderer.update,
        selected_model=model,
        mcp_servers=descriptors,
    )
    try:
        await session.mount(chat_id or None)
        console.print(Panel(
            f"chat [bold]{session.chat_id}[/bold]  model [bold]{model or cfg.model.model}[/bold]  "
            f"tool providers [bold]{len(descriptors)}[/bold]\nType /exit to quit.",
            title=f"mcp-chat v{__version__}",
        ))
        renderer.history(session.messages)

        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold cyan]you>[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                break
            if text.strip() in EXIT_COMMANDS:
                break
            task = await session.submit(text)
            if task is None:
                continue
            if await _wait_interruptible(session):
                console.print("\n[dim]Ctrl-C pressed, stopping response[/dim]")
            renderer.update(session)
            console.print()
            if session.status is not SessionStatus.IDLE:
                log.warning("Session did not return to idle", status=session.status.value)
    finally:
        await session.unmount()
        await api.close()


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the chat API server."""
    from mcp_chat.web_server import run_web_server

    cfg = _load_config(config, verbose)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    run_web_server(cfg)


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    chat_id: str = typer.Option("", "--chat-id", help="Open an existing chat"),
    model: str = typer.Option("", "-m", "--model", help="Model id to request"),
    user_id: str = typer.Option("local", "--user-id", help="User id sent with every request"),
    mcp: Path | None = typer.Option(None, "--mcp", help="JSON file with tool provider descriptors"),
    base_url: str = typer.Option("", "--base-url", help="Chat server URL"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat with the server from the terminal."""
    cfg = _load_config(config, verbose)
    descriptors: list[ToolDescriptor] = []
    if mcp is not None:
        try:
            descriptors = load_descriptor_file(mcp)
        except DescriptorError as e:
            console.print(f"[bold red]{e}[/bold red]")
            raise typer.Exit(code=2)
    asyncio.run(_chat_loop(cfg, chat_id, model, user_id, descriptors, base_url))


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"mcp-chat v{__version__}")


if __name__ == "__main__":
    app()
