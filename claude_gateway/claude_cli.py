from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing, suppress
from dataclasses import dataclass

from .errors import AgentProcessError, AgentTimeoutError, SpawnError
from .stream_json_cli import StreamDecoder, decode_output

logger = logging.getLogger("uvicorn.error")

DEFAULT_TIMEOUT_SECONDS = 120
_STDERR_MAX_BYTES = 64_000
_EXIT_POLL_SECONDS = 0.25
# How long to keep reading a pipe after the agent itself has exited.
_PIPE_GRACE_SECONDS = 1.0


@dataclass(frozen=True)
class ClaudeResult:
    text: str
    session_id: str
    skipped_lines: int = 0


def build_claude_cmd(
    *,
    claude_bin: str,
    session_id: str,
    system_prompt: str | None = None,
    streaming: bool = False,
    extra_args: Sequence[str] = (),
) -> list[str]:
    cmd: list[str] = [
        claude_bin,
        "--print",
        "--verbose",
        "--input-format",
        "stream-json",
        "--output-format",
        "stream-json",
    ]
    if streaming:
        cmd.append("--include-partial-messages")
    cmd.append("--dangerously-skip-permissions")
    cmd.extend(extra_args)
    if system_prompt is not None:
        cmd.extend(["--system-prompt", system_prompt])
    cmd.extend(["--session-id", session_id])
    return cmd


class ClaudeSession:
    """
    One Claude Code invocation, from spawn to exit.

    The NDJSON body is written to stdin once and stdin is closed; nothing else
    is ever sent. Use `run()` for a single final answer or `stream()` to
    receive text increments as the agent produces them. A session is single
    use and is never shared between requests.
    """

    def __init__(
        self,
        ndjson: str,
        *,
        system_prompt: str | None = None,
        session_id: str | None = None,
        claude_bin: str = "claude",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace_seconds: float = 5,
        extra_args: Sequence[str] = (),
        stream_limit: int = 8 * 1024 * 1024,
        stderr_callback: Callable[[str], None] | None = None,
    ) -> None:
        self.ndjson = ndjson
        self.system_prompt = system_prompt
        self.session_id = session_id or str(uuid.uuid4())
        self.claude_bin = claude_bin
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.extra_args = list(extra_args)
        self.stream_limit = stream_limit
        self.stderr_callback = stderr_callback
        self.decoder = StreamDecoder()
        self.returncode: int | None = None

    @property
    def text(self) -> str:
        return self.decoder.text

    def command(self, *, streaming: bool) -> list[str]:
        return build_claude_cmd(
            claude_bin=self.claude_bin,
            session_id=self.session_id,
            system_prompt=self.system_prompt,
            streaming=streaming,
            extra_args=self.extra_args,
        )

    async def _spawn(self, cmd: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
                limit=self.stream_limit,
            )
        except OSError as e:
            raise SpawnError(f"failed to start {cmd[0]!r}: {e}") from e

    async def _wait_exit(self, proc: asyncio.subprocess.Process, timeout: float) -> bool:
        """Wait for the process itself to exit, even if a child still holds its pipes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        # proc.wait() only returns once every pipe is closed, so poll the exit status instead.
        while proc.returncode is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            with suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=min(remaining, _EXIT_POLL_SECONDS))
        return True

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with suppress(ProcessLookupError):
            proc.terminate()
        if not await self._wait_exit(proc, self.kill_grace_seconds):
            logger.warning("claude pid=%s ignored SIGTERM; killing", proc.pid)
            with suppress(ProcessLookupError):
                proc.kill()
            await self._wait_exit(proc, self.kill_grace_seconds)

    def _finish(self, returncode: int, stderr: str) -> None:
        self.returncode = returncode
        if stderr:
            if self.stderr_callback is not None:
                self.stderr_callback(stderr)
            else:
                logger.warning("claude stderr: %s", stderr)
        if returncode != 0:
            raise AgentProcessError(returncode, stderr)

    async def _output(self, *, streaming: bool) -> AsyncIterator[bytes]:
        """
        Spawn the agent, feed it the NDJSON body and yield raw stdout chunks.

        Raises `AgentProcessError` on a non-zero exit and `AgentTimeoutError`
        once the wall-clock deadline passes. A pipe kept open by something the
        agent left running does not hold up an agent that has already exited.
        """
        loop = asyncio.get_running_loop()
        proc = await self._spawn(self.command(streaming=streaming))
        deadline = loop.time() + self.timeout_seconds
        stderr_buf = bytearray()

        async def _feed_stdin() -> None:
            if proc.stdin is None:
                return
            try:
                proc.stdin.write(self.ndjson.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # Agent exited before reading its input; the exit code tells why.
                pass
            finally:
                proc.stdin.close()

        async def _drain_stderr() -> None:
            if proc.stderr is None:
                return
            while True:
                chunk = await proc.stderr.read(4096)
                if not chunk:
                    return
                stderr_buf.extend(chunk)
                if len(stderr_buf) > _STDERR_MAX_BYTES:
                    del stderr_buf[:-_STDERR_MAX_BYTES]

        stdin_task = asyncio.create_task(_feed_stdin())
        drain_task = asyncio.create_task(_drain_stderr())
        try:
            if proc.stdout is None:
                raise SpawnError("claude stdout not available")

            exited_at: float | None = None
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError
                try:
                    chunk = await asyncio.wait_for(
                        proc.stdout.read(65536), timeout=min(remaining, _EXIT_POLL_SECONDS)
                    )
                except TimeoutError:
                    if proc.returncode is not None and exited_at is None:
                        exited_at = loop.time()
                    if exited_at is not None and loop.time() - exited_at >= _PIPE_GRACE_SECONDS:
                        logger.warning("claude pid=%s exited but stdout is still held open; not waiting", proc.pid)
                        break
                    continue
                if not chunk:
                    break
                yield chunk

            if not await self._wait_exit(proc, max(deadline - loop.time(), 0)):
                raise TimeoutError

            done, _ = await asyncio.wait(
                {drain_task}, timeout=max(min(deadline - loop.time(), _PIPE_GRACE_SECONDS), 0)
            )
            if not done:
                logger.warning("claude pid=%s exited but stderr is still held open; not waiting", proc.pid)
            self._finish(proc.returncode, bytes(stderr_buf).decode("utf-8", errors="replace").strip())
        except TimeoutError:
            await self._terminate(proc)
            raise AgentTimeoutError(self.timeout_seconds) from None
        finally:
            if proc.returncode is None:
                await self._terminate(proc)
            for task in (stdin_task, drain_task):
                if not task.done():
                    task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    async def run(self) -> ClaudeResult:
        out = bytearray()
        async with aclosing(self._output(streaming=False)) as chunks:
            async for chunk in chunks:
                out.extend(chunk)
        self.decoder = decode_output(bytes(out))
        return ClaudeResult(text=self.text, session_id=self.session_id, skipped_lines=self.decoder.skipped)

    async def stream(self) -> AsyncIterator[str]:
        """Yield assistant text increments; `self.text` holds the total afterwards."""
        async with aclosing(self._output(streaming=True)) as chunks:
            async for chunk in chunks:
                for delta in self.decoder.feed(chunk):
                    yield delta
        rest = self.decoder.close()
        if rest.strip():
            logger.debug("claude stdout ended without newline; dropped %d chars", len(rest))
