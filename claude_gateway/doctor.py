from __future__ import annotations

import asyncio
from contextlib import suppress

from rich.console import Console
from rich.table import Table

from .config import settings

_LOGGED_OUT_MARKERS = (
    "not logged in",
    "not authenticated",
    "please login",
    "please log in",
    "run: claude auth login",
    "run claude auth login",
)

INSTALL_HINT = (
    "Claude Code CLI not found - please install and authenticate:\n\n"
    "    npm install -g @anthropic-ai/claude-code\n"
    "    claude auth login"
)
LOGIN_HINT = "Claude Code is not authenticated - please log in:\n\n    claude auth login"


async def check_installed(claude_bin: str) -> bool:
    """Only a missing binary counts as a failure; any other spawn problem is left to request time."""
    try:
        proc = await asyncio.create_subprocess_exec(
            claude_bin,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError:
        return False
    except OSError:
        return True
    await proc.wait()
    return True


async def check_authenticated(claude_bin: str, *, timeout_seconds: float = 5) -> bool:
    try:
        proc = await asyncio.create_subprocess_exec(
            claude_bin,
            "auth",
            "status",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError:
        return True
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        with suppress(ProcessLookupError):
            proc.terminate()
        await proc.wait()
        return True
    if proc.returncode == 0:
        return True
    lowered = out.decode("utf-8", errors="ignore").lower()
    return not any(marker in lowered for marker in _LOGGED_OUT_MARKERS)


async def check_prerequisites(claude_bin: str) -> str | None:
    """Return a user-facing hint for the first failing check, or None."""
    if not await check_installed(claude_bin):
        return INSTALL_HINT
    if not await check_authenticated(claude_bin):
        return LOGIN_HINT
    return None


async def run_doctor(claude_bin: str | None = None, *, console: Console | None = None) -> int:
    claude_bin = claude_bin or settings.claude_bin
    console = console or Console()

    installed = await check_installed(claude_bin)
    authenticated = await check_authenticated(claude_bin) if installed else False

    table = Table(title="claude-gateway doctor", border_style="dim")
    table.add_column("Check", style="cyan")
    table.add_column("Result", justify="right")
    table.add_row("binary", claude_bin)
    table.add_row("installed", "[green]ok[/green]" if installed else "[red]missing[/red]")
    if installed:
        table.add_row("authenticated", "[green]ok[/green]" if authenticated else "[red]logged out[/red]")
    table.add_row("timeout_seconds", f"{settings.timeout_seconds:g}")
    console.print(table)

    if not installed:
        console.print(INSTALL_HINT)
        return 1
    if not authenticated:
        console.print(LOGIN_HINT)
        return 1
    return 0
