"""Tests for the claude CLI prerequisite checks."""

import io

import pytest
from rich.console import Console

from claude_gateway.doctor import (
    INSTALL_HINT,
    LOGIN_HINT,
    check_authenticated,
    check_installed,
    check_prerequisites,
    run_doctor,
)


def _console():
    return Console(file=io.StringIO(), width=120)


@pytest.mark.asyncio
class TestChecks:
    async def test_installed(self, fake_claude):
        assert await check_installed(str(fake_claude)) is True

    async def test_missing_binary(self, tmp_path):
        assert await check_installed(str(tmp_path / "claude")) is False

    async def test_authenticated(self, fake_claude):
        assert await check_authenticated(str(fake_claude)) is True

    async def test_logged_out(self, fake_claude, monkeypatch):
        monkeypatch.setenv("FAKE_CLAUDE_MODE", "logged_out")
        assert await check_authenticated(str(fake_claude)) is False

    async def test_unrelated_failure_is_not_a_login_problem(self, fake_claude, monkeypatch):
        monkeypatch.setenv("FAKE_CLAUDE_MODE", "fail")
        assert await check_authenticated(str(fake_claude)) is True

    async def test_slow_auth_status_passes(self, fake_claude, monkeypatch):
        monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
        assert await check_authenticated(str(fake_claude), timeout_seconds=0.3) is True

    async def test_prerequisites_hints(self, fake_claude, tmp_path, monkeypatch):
        assert await check_prerequisites(str(fake_claude)) is None
        assert await check_prerequisites(str(tmp_path / "missing")) == INSTALL_HINT
        monkeypatch.setenv("FAKE_CLAUDE_MODE", "logged_out")
        assert await check_prerequisites(str(fake_claude)) == LOGIN_HINT


@pytest.mark.asyncio
class TestRunDoctor:
    async def test_all_ok(self, fake_claude):
        console = _console()
        assert await run_doctor(str(fake_claude), console=console) == 0
        assert "installed" in console.file.getvalue()

    async def test_missing(self, tmp_path):
        console = _console()
        assert await run_doctor(str(tmp_path / "claude"), console=console) == 1
        assert "npm install -g @anthropic-ai/claude-code" in console.file.getvalue()

    async def test_logged_out(self, fake_claude, monkeypatch):
        monkeypatch.setenv("FAKE_CLAUDE_MODE", "logged_out")
        console = _console()
        assert await run_doctor(str(fake_claude), console=console) == 1
        assert "claude auth login" in console.file.getvalue()
