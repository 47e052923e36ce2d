"""OpenAI chat-completions wire format: message text, model aliases, response objects."""

import time
import uuid

MODEL_ALIASES = {
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-6",
    "haiku": "claude-haiku-4-5-20251001",
}

MODELS = {
    "object": "list",
    "data": [
        {"id": model_id, "object": "model", "created": 1700000000, "owned_by": "anthropic"}
        for model_id in MODEL_ALIASES.values()
    ],
}

DONE_FRAME = b"data: [DONE]\n\n"


def resolve_model(requested: str | None, default_model: str) -> str:
    """Map an alias to its concrete id; unknown ids pass through, empty falls back."""
    if not requested:
        return MODEL_ALIASES.get(default_model, default_model)
    return MODEL_ALIASES.get(requested, requested)


def text_content(content) -> str:
    """Plain text of a message's content: a string, or the text parts joined by newlines."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        part["text"]
        for part in content
        if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
    )


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def now() -> int:
    return int(time.time())


def error_body(message: str, error_type: str) -> dict:
    return {"error": {"message": message, "type": error_type}}


def completion(
    completion_id: str,
    created: int,
    model: str,
    content: str,
    finish_reason: str = "stop",
    usage: dict | None = None,
) -> dict:
    body = {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }
    if usage:
        body["usage"] = usage
    return body


def chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict,
    finish_reason: str | None = None,
    usage: dict | None = None,
) -> dict:
    body = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage:
        body["usage"] = usage
    return body
