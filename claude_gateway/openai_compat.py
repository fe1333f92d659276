from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidRequestError


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]


class ChatCompletionRequest(BaseModel):
    model: str | None = None
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False
    # Non-standard: opaque Claude Code session token from a previous `_session_id`.
    session_id: str | None = None

    # Accept extra fields from clients (temperature, max_tokens, etc.).
    model_config = ConfigDict(extra="allow")


class CompletionRequest(BaseModel):
    model: str | None = None
    prompt: str
    stream: bool = False

    model_config = ConfigDict(extra="allow")

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("`prompt` must be a non-empty string")
        return value


class ErrorResponse(BaseModel):
    error: dict[str, Any] = Field(default_factory=dict)


def to_blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return content


def to_plain_text(content: Any) -> str:
    """Concatenate the `text` of every text block; other blocks are dropped."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "".join(parts)


def extract_system_prompt(messages: list[ChatMessage]) -> str | None:
    for message in messages:
        if message.role != "system":
            continue
        content = message.content
        if isinstance(content, str):
            return content
        return "\n".join(
            block["text"]
            for block in content
            if block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    return None


def _image_block_from_url(url: str) -> dict[str, Any]:
    if not url.startswith("data:"):
        return {"type": "image", "source": {"type": "url", "url": url}}
    try:
        header, payload = url.split(",", 1)
    except ValueError as e:
        raise InvalidRequestError("Invalid data: URL in image_url block") from e
    if ";base64" not in header:
        raise InvalidRequestError("Unsupported data: URL encoding (expected base64)")
    media_type = header.removeprefix("data:").split(";", 1)[0].strip() or "application/octet-stream"
    # base64 payload may contain newlines; strip whitespace.
    data = "".join(payload.split())
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def convert_openai_blocks(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Rewrite OpenAI `image_url` blocks into Claude `image` blocks.

    Every other block (text, image, document, or anything unknown) is passed
    through untouched so newer agent block types keep working.
    """
    converted: list[dict[str, Any]] = []
    for block in blocks:
        if block.get("type") != "image_url":
            converted.append(block)
            continue
        image_url = block.get("image_url")
        url = image_url.get("url") if isinstance(image_url, dict) else image_url
        if not isinstance(url, str) or not url.strip():
            raise InvalidRequestError("image_url block is missing a url")
        converted.append(_image_block_from_url(url.strip()))
    return converted


def messages_to_events(
    messages: list[ChatMessage], *, convert_image_urls: bool = True
) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        blocks = to_blocks(message.content)
        if convert_image_urls:
            blocks = convert_openai_blocks(blocks)
        events.append(
            {
                "type": "user" if message.role == "user" else "assistant",
                "message": {"role": message.role, "content": blocks},
            }
        )
    return events


def messages_to_ndjson(messages: list[ChatMessage], *, convert_image_urls: bool = True) -> str:
    """
    Render the conversation as Claude Code `--input-format stream-json` input.

    System messages never become events; use `extract_system_prompt` for them.
    A system-only history renders as a lone newline (zero events).
    """
    lines = [
        json.dumps(event, ensure_ascii=False, separators=(",", ":"))
        for event in messages_to_events(messages, convert_image_urls=convert_image_urls)
    ]
    return "\n".join(lines) + "\n"
