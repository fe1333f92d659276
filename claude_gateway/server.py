from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing, nullcontext, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from . import __version__
from .claude_cli import ClaudeSession
from .config import settings
from .errors import GatewayError, InvalidRequestError
from .openai_compat import (
    ChatCompletionRequest,
    ChatMessage,
    CompletionRequest,
    extract_system_prompt,
    messages_to_ndjson,
    to_plain_text,
)
from .openai_responses import (
    SSE_DONE,
    SSE_KEEPALIVE,
    build_chat_response,
    build_text_response,
    new_chat_id,
    new_completion_id,
    openai_error_payload,
    sse_chat_chunk,
    sse_error_message,
    sse_text_chunk,
)

app = FastAPI(title="claude-gateway", version=__version__)
logger = logging.getLogger("uvicorn.error")

_cors_origins = settings.cors_origin_list()
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["X-Session-Id"],
    )


_semaphore: asyncio.Semaphore | None = None


def _concurrency_slot():
    global _semaphore
    if settings.max_concurrency <= 0:
        return nullcontext()
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(settings.max_concurrency)
    return _semaphore


def _truncate_for_log(text: str) -> str:
    limit = settings.log_max_chars
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated, {len(text)} chars total)"


def _short_id(resp_id: str) -> str:
    """Extract short ID from chatcmpl-xxx / cmpl-xxx format."""
    _, _, tail = resp_id.partition("-")
    return (tail or resp_id)[:8]


_RICH_CONSOLE: Console | None = None


def _console() -> Console:
    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        # stderr matches uvicorn's default logging stream.
        _RICH_CONSOLE = Console(stderr=True)
    return _RICH_CONSOLE


def _maybe_print_markdown(resp_id: str, label: str, text: str, *, duration_ms: int | None = None) -> bool:
    """
    Render markdown to the terminal for easier reading.
    Returns True if rendered (so callers can skip duplicate plain logging).
    """
    if not settings.log_render_markdown or not text:
        return False
    short = _short_id(resp_id)
    if label == "Q":
        style, title = "cyan", f"Question [{short}]"
    elif label == "A":
        style = "green"
        title = f"Answer [{short}]"
        if duration_ms:
            title = f"{title} {duration_ms / 1000:.1f}s"
    else:
        style, title = "blue", f"[{short}] {label}"
    payload = _truncate_for_log(text).rstrip("\n")
    _console().print(Panel(Markdown(payload), title=title, border_style=style, expand=False))
    return True


def _print_error_panel(resp_id: str, error_msg: str, status_code: int = 500) -> None:
    """Print error in a red panel for visibility."""
    _console().print(
        Panel(
            Text(error_msg, style="bold white"),
            title=f"Error [{_short_id(resp_id)}] HTTP {status_code}",
            border_style="red",
            expand=False,
        )
    )


def _log_question(resp_id: str, messages: list[ChatMessage]) -> None:
    log_mode = settings.effective_log_mode()
    if log_mode == "summary":
        return
    if log_mode == "qa":
        last_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if last_user is None:
            return
        body = to_plain_text(last_user.content)
        if not _maybe_print_markdown(resp_id, "Q", body):
            logger.info("[%s] Q:\n%s", resp_id, _truncate_for_log(body))
        return
    body = "\n\n".join(f"{m.role.upper()}: {to_plain_text(m.content)}" for m in messages)
    if not _maybe_print_markdown(resp_id, "PROMPT", body):
        logger.info("[%s] PROMPT:\n%s", resp_id, _truncate_for_log(body))


def _log_answer(resp_id: str, text: str, duration_ms: int) -> None:
    log_mode = settings.effective_log_mode()
    if log_mode == "summary" or not text:
        return
    label = "A" if log_mode == "qa" else "RESPONSE"
    if not _maybe_print_markdown(resp_id, label, text, duration_ms=duration_ms):
        logger.info("[%s] %s:\n%s", resp_id, label, _truncate_for_log(text))


def _error_status(err: BaseException) -> tuple[int, str, str]:
    if isinstance(err, InvalidRequestError):
        return err.status_code, err.error_type, str(err)
    if isinstance(err, GatewayError):
        if err.status_code == 502:
            return err.status_code, err.error_type, f"Claude Code error: {err}"
        return err.status_code, err.error_type, str(err)
    return 500, "proxy_error", str(err) or "Internal server error"


def _openai_error(message: str, *, status_code: int = 500, error_type: str = "proxy_error") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=openai_error_payload(message, status_code=status_code, error_type=error_type),
    )


def _error_response(resp_id: str, err: BaseException) -> JSONResponse:
    status, error_type, message = _error_status(err)
    logger.error("[%s] error status=%d %s", resp_id, status, _truncate_for_log(message))
    _print_error_panel(resp_id, message, status)
    return _openai_error(message, status_code=status, error_type=error_type)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:]) or "body"
        parts.append(f"{loc}: {err.get('msg')}")
    message = "; ".join(parts) or "Invalid request body"
    logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
    return _openai_error(message, status_code=400, error_type="invalid_request_error")


def _new_session(
    ndjson: str,
    *,
    resp_id: str,
    system_prompt: str | None = None,
    session_id: str | None = None,
) -> ClaudeSession:
    def _stderr_log(text: str) -> None:
        logger.warning("[%s] claude stderr: %s", resp_id, _truncate_for_log(text))

    return ClaudeSession(
        ndjson,
        system_prompt=system_prompt,
        session_id=session_id,
        claude_bin=settings.claude_bin,
        timeout_seconds=settings.timeout_seconds,
        kill_grace_seconds=settings.kill_grace_seconds,
        extra_args=settings.claude_extra_args,
        stream_limit=settings.subprocess_stream_limit,
        stderr_callback=_stderr_log,
    )


async def _sse_gen(
    request: Request,
    session: ClaudeSession,
    *,
    resp_id: str,
    model: str,
    created: int,
    chat: bool,
    t0: float,
) -> AsyncIterator[str]:
    def _frame(content: str | None = None, *, role: str | None = None, finish_reason: str | None = None) -> str:
        if chat:
            return sse_chat_chunk(
                resp_id=resp_id,
                model=model,
                created=created,
                content=content,
                role=role,
                finish_reason=finish_reason,
            )
        return sse_text_chunk(
            resp_id=resp_id, model=model, created=created, text=content or "", finish_reason=finish_reason
        )

    keepalive = max(settings.sse_keepalive_seconds, 0)
    queue: asyncio.Queue[str | Exception | None] = asyncio.Queue()
    status = "ok"

    async def _pump_deltas() -> None:
        try:
            async with aclosing(session.stream()) as deltas:
                async for delta in deltas:
                    await queue.put(delta)
        except Exception as e:
            await queue.put(e)
        finally:
            await queue.put(None)

    try:
        async with _concurrency_slot():
            if chat:
                yield _frame(role="assistant")
            pump_task = asyncio.create_task(_pump_deltas())
            try:
                while True:
                    if await request.is_disconnected():
                        status = "disconnected"
                        logger.info("[%s] client disconnected; stopping claude", resp_id)
                        return

                    try:
                        if keepalive > 0:
                            item = await asyncio.wait_for(queue.get(), timeout=keepalive)
                        else:
                            item = await queue.get()
                    except TimeoutError:
                        yield SSE_KEEPALIVE
                        continue

                    if item is None:
                        break
                    if isinstance(item, Exception):
                        status = "error"
                        code, _, message = _error_status(item)
                        logger.error("[%s] stream error status=%d %s", resp_id, code, _truncate_for_log(message))
                        _print_error_panel(resp_id, message, code)
                        yield _frame(sse_error_message(item))
                        break
                    yield _frame(item)
            finally:
                pump_task.cancel()
                with suppress(asyncio.CancelledError):
                    await pump_task

        if status == "ok":
            yield _frame(finish_reason="stop")
        yield SSE_DONE
    finally:
        duration_ms = int((time.time() - t0) * 1000)
        logger.info(
            "[%s] stream %s duration_ms=%d chars=%d session=%s",
            resp_id,
            status,
            duration_ms,
            len(session.text),
            session.session_id,
        )
        _log_answer(resp_id, session.text, duration_ms)


def _streaming_response(gen: AsyncIterator[str], *, session_id: str | None = None) -> StreamingResponse:
    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
    if session_id:
        headers["X-Session-Id"] = session_id
    return StreamingResponse(gen, media_type="text/event-stream", headers=headers)


@app.get("/")
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/v1/models")
async def list_models():
    return {
        "object": "list",
        "data": [
            {"id": settings.default_model, "object": "model", "created": 1_700_000_000, "owned_by": "anthropic"}
        ],
    }


@app.post("/v1/chat/completions")
async def chat_completions(req: ChatCompletionRequest, request: Request):
    t0 = time.time()
    created = int(t0)
    resp_id = new_chat_id()
    model = (req.model or "").strip() or settings.default_model

    try:
        system_prompt = extract_system_prompt(req.messages)
        ndjson = messages_to_ndjson(req.messages, convert_image_urls=settings.convert_image_urls)
    except InvalidRequestError as e:
        return _error_response(resp_id, e)

    session = _new_session(ndjson, resp_id=resp_id, system_prompt=system_prompt, session_id=req.session_id)
    logger.info(
        "[%s] chat messages=%d session=%s%s",
        resp_id,
        len(req.messages),
        req.session_id or f"{session.session_id} (new)",
        " stream=true" if req.stream else "",
    )
    _log_question(resp_id, req.messages)

    if req.stream:
        gen = _sse_gen(request, session, resp_id=resp_id, model=model, created=created, chat=True, t0=t0)
        return _streaming_response(gen, session_id=session.session_id)

    try:
        async with _concurrency_slot():
            result = await session.run()
    except Exception as e:
        return _error_response(resp_id, e)

    duration_ms = int((time.time() - t0) * 1000)
    logger.info(
        "[%s] response status=200 duration_ms=%d chars=%d skipped_lines=%d",
        resp_id,
        duration_ms,
        len(result.text),
        result.skipped_lines,
    )
    _log_answer(resp_id, result.text, duration_ms)
    return JSONResponse(
        content=build_chat_response(
            result.text, model=model, session_id=result.session_id, resp_id=resp_id, created=created
        ),
        headers={"X-Session-Id": result.session_id},
    )


@app.post("/v1/completions")
async def completions(req: CompletionRequest, request: Request):
    t0 = time.time()
    created = int(t0)
    resp_id = new_completion_id()
    model = (req.model or "").strip() or settings.default_model

    messages = [ChatMessage(role="user", content=req.prompt)]
    session = _new_session(messages_to_ndjson(messages, convert_image_urls=False), resp_id=resp_id)
    logger.info("[%s] text prompt_len=%d%s", resp_id, len(req.prompt), " stream=true" if req.stream else "")
    _log_question(resp_id, messages)

    if req.stream:
        gen = _sse_gen(request, session, resp_id=resp_id, model=model, created=created, chat=False, t0=t0)
        return _streaming_response(gen)

    try:
        async with _concurrency_slot():
            result = await session.run()
    except Exception as e:
        return _error_response(resp_id, e)

    duration_ms = int((time.time() - t0) * 1000)
    logger.info("[%s] response status=200 duration_ms=%d chars=%d", resp_id, duration_ms, len(result.text))
    _log_answer(resp_id, result.text, duration_ms)
    return build_text_response(result.text, model=model, resp_id=resp_id, created=created)
