import argparse
import asyncio
import os
import sys
from pathlib import Path

import uvicorn


def _maybe_load_dotenv(path: Path) -> bool:
    if not path.exists() or not path.is_file():
        return False
    for raw_line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if len(value) >= 2 and value[0] in {"'", '"'} and value[-1] == value[0]:
            value = value[1:-1]
        os.environ.setdefault(key, value)
    return True


def _port(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f'invalid --port value: "{raw}" (must be an integer from 1 to 65535)')
    if not 1 <= value <= 65535:
        raise argparse.ArgumentTypeError(f'invalid --port value: "{raw}" (must be an integer from 1 to 65535)')
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-gateway",
        description="Expose the Claude Code CLI as an OpenAI-compatible /v1 API.",
        epilog=(
            "endpoints: POST /v1/chat/completions (streaming, session_id), "
            "POST /v1/completions (streaming), GET /v1/models, GET /health"
        ),
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "doctor"],
        help="serve (default) or doctor (check the claude CLI and exit).",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Bind host (default: $CLAUDE_GATEWAY_HOST or 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=_port,
        help="Bind port (default: $PORT or 3000).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable uvicorn reload (dev only).",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CLAUDE_GATEWAY_LOG_LEVEL", "info"),
        help="Uvicorn log level (default: info).",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optionally load environment variables from this .env file.",
    )
    parser.add_argument(
        "--skip-checks",
        action="store_true",
        help="Do not verify that the claude CLI is installed and logged in before serving.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        path = Path(args.env_file)
        if _maybe_load_dotenv(path):
            print(f"[claude-gateway] loaded env: {path}")

    # Imported after .env loading so Settings picks the values up.
    from .config import settings
    from .doctor import check_prerequisites, run_doctor

    if args.command == "doctor":
        raise SystemExit(asyncio.run(run_doctor()))

    if not args.skip_checks:
        hint = asyncio.run(check_prerequisites(settings.claude_bin))
        if hint:
            print(f"\n  {hint}\n", file=sys.stderr)
            raise SystemExit(1)

    uvicorn.run(
        "claude_gateway.server:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=args.log_level,
    )


__all__ = ["main"]
