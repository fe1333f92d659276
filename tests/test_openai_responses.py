"""Tests for OpenAI response shapes."""

import json

from claude_gateway.errors import AgentProcessError
from claude_gateway.openai_responses import (
    SSE_DONE,
    USAGE_UNAVAILABLE,
    build_chat_response,
    build_text_response,
    new_chat_id,
    new_completion_id,
    openai_error_payload,
    sse_chat_chunk,
    sse_error_message,
    sse_text_chunk,
)


def _parse_frame(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: ") : -2])


def test_ids_have_openai_prefixes_and_are_unique():
    assert new_chat_id().startswith("chatcmpl-")
    assert new_completion_id().startswith("cmpl-")
    assert new_chat_id() != new_chat_id()


def test_chat_response_carries_session_and_usage_sentinel():
    resp = build_chat_response("Hello", model="m", session_id="sid", resp_id="chatcmpl-1", created=42)
    assert resp["id"] == "chatcmpl-1"
    assert resp["object"] == "chat.completion"
    assert resp["created"] == 42
    assert resp["model"] == "m"
    assert resp["_session_id"] == "sid"
    assert resp["choices"] == [
        {"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}
    ]
    assert resp["usage"] == {"prompt_tokens": -1, "completion_tokens": -1, "total_tokens": -1}


def test_usage_sentinel_is_not_shared():
    resp = build_chat_response("x", model="m", session_id="sid")
    resp["usage"]["prompt_tokens"] = 10
    assert USAGE_UNAVAILABLE["prompt_tokens"] == -1


def test_text_response_has_no_session():
    resp = build_text_response("Hello", model="m")
    assert resp["object"] == "text_completion"
    assert resp["id"].startswith("cmpl-")
    assert isinstance(resp["created"], int)
    assert "_session_id" not in resp
    assert resp["choices"] == [{"text": "Hello", "index": 0, "logprobs": None, "finish_reason": "stop"}]
    assert resp["usage"] == USAGE_UNAVAILABLE


def test_chat_chunk_carries_only_delta():
    payload = _parse_frame(sse_chat_chunk(resp_id="chatcmpl-1", model="m", created=1, content="lo"))
    assert payload["object"] == "chat.completion.chunk"
    assert payload["choices"] == [{"index": 0, "delta": {"content": "lo"}, "finish_reason": None}]


def test_chat_role_and_terminal_chunks():
    opening = _parse_frame(sse_chat_chunk(resp_id="c", model="m", created=1, role="assistant"))
    assert opening["choices"][0]["delta"] == {"role": "assistant"}
    terminal = _parse_frame(sse_chat_chunk(resp_id="c", model="m", created=1, finish_reason="stop"))
    assert terminal["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "stop"}


def test_text_chunk():
    payload = _parse_frame(sse_text_chunk(resp_id="cmpl-1", model="m", created=1, text="ab"))
    assert payload["object"] == "text_completion"
    assert payload["choices"] == [{"text": "ab", "index": 0, "logprobs": None, "finish_reason": None}]


def test_chunks_keep_unicode():
    assert "☕" in sse_chat_chunk(resp_id="c", model="m", created=1, content="☕")


def test_done_frame():
    assert SSE_DONE == "data: [DONE]\n\n"


def test_error_message_and_payload():
    err = AgentProcessError(1, "boom")
    assert sse_error_message(err) == "\n\n[Proxy error: claude exited with code 1: boom]"
    assert openai_error_payload("bad", status_code=400, error_type="invalid_request_error") == {
        "error": {"message": "bad", "type": "invalid_request_error", "param": None, "code": 400}
    }
