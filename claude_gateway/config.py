from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

LogMode = Literal["summary", "qa", "full"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_csv(name: str) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return []
    items: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            items.append(part)
    return items


@dataclass(frozen=True)
class Settings:
    host: str = os.environ.get("CLAUDE_GATEWAY_HOST", "127.0.0.1")
    port: int = _env_int("PORT", 3000)

    # Claude Code CLI binary and any extra flags appended before --system-prompt/--session-id.
    claude_bin: str = _env_str("CLAUDE_BIN", "claude")
    claude_extra_args: list[str] = field(default_factory=lambda: _env_csv("CLAUDE_EXTRA_ARGS"))

    # Echoed back as `model` when the client does not send one.
    default_model: str = _env_str("CLAUDE_GATEWAY_MODEL", "claude-code-proxy")

    # Hard safety caps.
    timeout_seconds: float = _env_float("CLAUDE_TIMEOUT_SECONDS", 120)
    # Time between SIGTERM and SIGKILL for a timed-out or abandoned agent.
    kill_grace_seconds: float = _env_float("CLAUDE_KILL_GRACE_SECONDS", 5)
    subprocess_stream_limit: int = _env_int("CLAUDE_STREAM_LIMIT", 8 * 1024 * 1024)
    # 0 means unlimited.
    max_concurrency: int = _env_int("CLAUDE_GATEWAY_MAX_CONCURRENCY", 0)
    sse_keepalive_seconds: float = _env_float("CLAUDE_GATEWAY_SSE_KEEPALIVE_SECONDS", 15)

    # CORS (comma-separated origins). Empty disables CORS.
    cors_origins: str = os.environ.get("CLAUDE_GATEWAY_CORS_ORIGINS", "*")

    # Rewrite OpenAI `image_url` blocks into Claude image blocks.
    convert_image_urls: bool = _env_bool("CLAUDE_GATEWAY_CONVERT_IMAGE_URLS", True)

    log_mode: LogMode = os.environ.get("CLAUDE_GATEWAY_LOG_MODE", "summary")  # type: ignore[assignment]
    log_max_chars: int = _env_int("CLAUDE_GATEWAY_LOG_MAX_CHARS", 4000)
    log_render_markdown: bool = _env_bool("CLAUDE_GATEWAY_LOG_RENDER_MARKDOWN", False)

    def effective_log_mode(self) -> LogMode:
        mode = (self.log_mode or "").strip().lower()
        if mode in {"qa", "full"}:
            return mode  # type: ignore[return-value]
        return "summary"

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
