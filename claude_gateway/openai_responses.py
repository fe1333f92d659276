from __future__ import annotations

import json
import time
import uuid
from typing import Any

from .openai_compat import ErrorResponse

# Token counts are not observable through the CLI; -1 keeps clients from reading them as zero.
USAGE_UNAVAILABLE = {"prompt_tokens": -1, "completion_tokens": -1, "total_tokens": -1}

SSE_DONE = "data: [DONE]\n\n"
SSE_KEEPALIVE = ": ping\n\n"


def new_chat_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def new_completion_id() -> str:
    return f"cmpl-{uuid.uuid4().hex}"


def _now() -> int:
    return int(time.time())


def build_chat_response(
    content: str,
    *,
    model: str,
    session_id: str,
    resp_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    return {
        "id": resp_id or new_chat_id(),
        "object": "chat.completion",
        "created": created if created is not None else _now(),
        "model": model,
        # Non-standard: send back as `session_id` to continue the conversation.
        "_session_id": session_id,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": dict(USAGE_UNAVAILABLE),
    }


def build_text_response(
    text: str,
    *,
    model: str,
    resp_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    return {
        "id": resp_id or new_completion_id(),
        "object": "text_completion",
        "created": created if created is not None else _now(),
        "model": model,
        "choices": [{"text": text, "index": 0, "logprobs": None, "finish_reason": "stop"}],
        "usage": dict(USAGE_UNAVAILABLE),
    }


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def sse_chat_chunk(
    *,
    resp_id: str,
    model: str,
    created: int,
    content: str | None = None,
    role: str | None = None,
    finish_reason: str | None = None,
) -> str:
    delta: dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return _sse(
        {
            "id": resp_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
    )


def sse_text_chunk(
    *,
    resp_id: str,
    model: str,
    created: int,
    text: str = "",
    finish_reason: str | None = None,
) -> str:
    return _sse(
        {
            "id": resp_id,
            "object": "text_completion",
            "created": created,
            "model": model,
            "choices": [{"text": text, "index": 0, "logprobs": None, "finish_reason": finish_reason}],
        }
    )


def sse_error_message(err: BaseException) -> str:
    """Text appended in-band when a stream fails after its headers were sent."""
    return f"\n\n[Proxy error: {err}]"


def openai_error_payload(message: str, *, status_code: int, error_type: str = "proxy_error") -> dict[str, Any]:
    return ErrorResponse(
        error={
            "message": message,
            "type": error_type,
            "param": None,
            "code": status_code,
        }
    ).model_dump()
