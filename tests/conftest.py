"""Shared fixtures: a scriptable stand-in for the `claude` binary."""

import stat
import sys
import textwrap
from pathlib import Path

import pytest

_FAKE_CLAUDE = textwrap.dedent(
    '''
    import json
    import os
    import signal
    import subprocess
    import sys
    import time

    body = sys.stdin.read()
    record = os.environ.get("FAKE_CLAUDE_RECORD")
    if record:
        with open(record, "w", encoding="utf-8") as f:
            json.dump({"argv": sys.argv[1:], "stdin": body}, f)

    mode = os.environ.get("FAKE_CLAUDE_MODE", "echo")


    def emit(line):
        sys.stdout.write(line)
        sys.stdout.flush()


    def assistant(text):
        return json.dumps(
            {"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": text}]}}
        ) + "\\n"


    if mode == "logged_out" and sys.argv[1:] == ["auth", "status"]:
        sys.stdout.write("Not logged in. Run: claude auth login\\n")
        sys.exit(1)

    if mode == "fail":
        sys.stderr.write("boom\\n")
        sys.exit(3)

    if mode == "hang":
        time.sleep(60)
        sys.exit(0)

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        time.sleep(60)
        sys.exit(0)

    last_user = ""
    for line in body.splitlines():
        if not line.strip():
            continue
        event = json.loads(line)
        if event["type"] == "user":
            last_user = "".join(
                b.get("text", "") for b in event["message"]["content"] if b.get("type") == "text"
            )
    reply = os.environ.get("FAKE_CLAUDE_REPLY") or f"echo: {last_user}"

    emit(json.dumps({"type": "system", "subtype": "init", "session_id": "ignored"}) + "\\n")
    emit("this line is not json\\n")

    if mode == "split":
        line = assistant(reply)
        third = max(len(line) // 3, 1)
        for start in range(0, len(line), third):
            emit(line[start : start + third])
            time.sleep(0.02)
    else:
        steps = [len(reply) // 3, 2 * len(reply) // 3, len(reply)]
        for n in steps:
            emit(assistant(reply[:n]))
            time.sleep(0.02)
        # Stale, shorter accumulation must not clobber progress.
        emit(assistant(reply[: len(reply) // 3]))

    emit(json.dumps({"type": "result", "subtype": "success", "result": reply}) + "\\n")

    if mode == "stderr":
        sys.stderr.write("warning: deprecated flag\\n")
    if mode == "fail_late":
        sys.stderr.write("boom after output\\n")
        sys.exit(2)
    if mode == "hang_late":
        time.sleep(60)
    if mode in ("orphan_stderr", "orphan_stdout"):
        # Leave a child behind that inherits one of our pipes, then exit cleanly.
        quiet = {"stdout": subprocess.DEVNULL} if mode == "orphan_stderr" else {"stderr": subprocess.DEVNULL}
        subprocess.Popen([sys.executable, "-c", "import time; time.sleep(8)"], **quiet)
        sys.exit(0)
    '''
)


@pytest.fixture
def fake_claude(tmp_path: Path) -> Path:
    """Path to an executable that speaks Claude Code's stream-json protocol."""
    path = tmp_path / "claude"
    path.write_text(f"#!{sys.executable}\n{_FAKE_CLAUDE}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def claude_record(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """File where the fake claude writes its argv and stdin."""
    path = tmp_path / "record.json"
    monkeypatch.setenv("FAKE_CLAUDE_RECORD", str(path))
    return path
