"""Aether Chat CLI - terminal client for the streaming chat relay.

A rich TUI that talks to the FastAPI relay over HTTP/SSE and renders the
reply as it streams in.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import Optional

import httpx
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.style import Style
from rich.text import Text

from .client import ChatSession, SendStatus, TranscriptState
from .client.parts import InvalidImageError, build_parts, load_image_part
from .schemas.chat import ChatMessage, ImagePart

ASSISTANT_STYLE = Style(color="bright_green")
ERROR_STYLE = Style(color="red", bold=True)
INFO_STYLE = Style(color="cyan")

MAX_PASSWORD_ATTEMPTS = 3


class ShellChat:
    """Terminal chat client for the Aether relay."""

    def __init__(self, server_url: str, password: Optional[str] = None):
        self.server_url = server_url.rstrip("/")
        self.password = password
        self.console = Console()
        self.session = ChatSession(self.server_url, on_failure=self._show_failure)
        self.image: Optional[ImagePart] = None
        self.running = True

    def _show_failure(self, message: str) -> None:
        self.console.print(f"Error: {message}", style=ERROR_STYLE)

    async def _check_health(self) -> bool:
        """Check if the relay is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.server_url}/health")
            if resp.status_code == 200:
                model = resp.json().get("model", "unknown")
                self.console.print(f"[dim]Connected to relay. Model: {model}[/dim]")
                return True
            self.console.print(
                f"Relay health check failed: {resp.status_code}",
                style=ERROR_STYLE,
            )
        except httpx.HTTPError as e:
            self.console.print(
                f"Cannot connect to relay: {e}", style=ERROR_STYLE
            )
        return False

    async def _unlock(self) -> bool:
        """Pass the shared-secret gate, prompting when needed."""
        if not await self.session.is_password_protected():
            return True

        if self.password and await self.session.verify_password(self.password):
            return True

        for _ in range(MAX_PASSWORD_ATTEMPTS):
            candidate = Prompt.ask("[bold]Password[/bold]", password=True)
            if await self.session.verify_password(candidate):
                self.console.print("[dim]Access granted.[/dim]")
                return True
            self.console.print("Wrong password", style=ERROR_STYLE)
        return False

    def _show_help(self) -> None:
        help_text = """
[bold]Commands:[/bold]
  /help              Show this help message
  /image <path>      Attach an image to the next message
  /image             Drop the pending image
  /clear             Clear the conversation
  /quit              Exit

[bold]Shortcuts:[/bold]
  Ctrl+C             Stop the current reply
  Ctrl+D             Exit
"""
        self.console.print(
            Panel(help_text.strip(), title="Aether Chat Help", border_style="blue")
        )

    def _handle_command(self, cmd: str) -> bool:
        """Handle slash commands. Returns True if handled."""
        command, _, argument = cmd.strip().partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "/help":
            self._show_help()
        elif command == "/clear":
            self.session.clear()
            self.image = None
            self.console.print("Conversation cleared.", style=INFO_STYLE)
        elif command == "/quit":
            self.running = False
        elif command == "/image":
            if not argument:
                self.image = None
                self.console.print("[dim]Image detached.[/dim]")
                return True
            try:
                self.image = load_image_part(argument)
            except InvalidImageError as e:
                self.console.print(f"{e}", style=ERROR_STYLE)
            else:
                self.console.print(
                    f"Attached {argument} ({self.image.mime_type})",
                    style=INFO_STYLE,
                )
        else:
            return False
        return True

    @staticmethod
    def _latest_reply(state: TranscriptState) -> Optional[ChatMessage]:
        if state.pending is not None:
            return state.pending
        if state.messages and state.messages[-1].role == "model":
            return state.messages[-1]
        return None

    def _render(self, state: TranscriptState):
        reply = self._latest_reply(state)
        if reply is None or not reply.text:
            return Text("…", style=ASSISTANT_STYLE)
        return Markdown(reply.text)

    def _show_citations(self, message: ChatMessage) -> None:
        if not message.citations:
            return
        self.console.print("[bold]Sources:[/bold]")
        for index, citation in enumerate(message.citations, start=1):
            label = citation.title or citation.uri or "source"
            suffix = f" ({citation.uri})" if citation.uri and citation.title else ""
            self.console.print(f"  [dim]{index}. {label}{suffix}[/dim]")

    async def _stream_chat(self, message: str) -> None:
        parts = build_parts(message, self.image)
        if not parts:
            return
        self.image = None

        loop = asyncio.get_running_loop()
        status: Optional[SendStatus] = None
        with Live(
            self._render(self.session.store.state),
            console=self.console,
            refresh_per_second=10,
        ) as live:
            unsubscribe = self.session.store.subscribe(
                lambda state, _action: live.update(self._render(state))
            )
            try:
                loop.add_signal_handler(signal.SIGINT, self.session.cancel)
            except (NotImplementedError, RuntimeError):
                pass
            try:
                status = await self.session.send(parts)
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass
                unsubscribe()

        if status is SendStatus.CANCELLED:
            self.console.print("[dim]Reply stopped[/dim]")
        elif status is SendStatus.COMPLETED:
            reply = self._latest_reply(self.session.store.state)
            if reply is not None:
                self._show_citations(reply)

    async def run(self) -> None:
        """Main chat loop."""
        if not await self._check_health():
            return
        if not await self._unlock():
            self.console.print("Access denied", style=ERROR_STYLE)
            return

        self.console.print()
        self.console.print(
            "[bold]Aether Chat[/bold] - Type /help for commands, Ctrl+D to exit",
            style=INFO_STYLE,
        )
        self.console.print()

        try:
            while self.running:
                try:
                    prompt = "[bold blue]You[/bold blue]"
                    if self.image is not None:
                        prompt += " [dim](+image)[/dim]"
                    user_input = Prompt.ask(prompt)
                    if not user_input.strip() and self.image is None:
                        continue

                    if user_input.startswith("/") and self._handle_command(user_input):
                        continue

                    self.console.print()
                    await self._stream_chat(user_input)
                    self.console.print()

                except EOFError:
                    self.console.print("\n[dim]Goodbye![/dim]")
                    break
                except KeyboardInterrupt:
                    self.console.print()
                    continue
        finally:
            await self.session.aclose()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Aether Chat - terminal client for the streaming chat relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  aether-chat                           Connect to localhost:8000
  aether-chat --server http://pi:8000   Connect to a remote relay

Environment Variables:
  AETHER_SERVER      Default relay URL
  AETHER_PASSWORD    Access password for protected relays
""",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("AETHER_SERVER", "http://localhost:8000"),
        help="Relay URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("AETHER_PASSWORD"),
        help="Access password (prompted for when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "WARNING"),
        help="Client log level (default: WARNING)",
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    chat = ShellChat(server_url=args.server, password=args.password)
    try:
        asyncio.run(chat.run())
    except KeyboardInterrupt:
        print("\nExiting...")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
