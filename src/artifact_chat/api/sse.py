import json


def format_sse_event(event_type: str, data: str) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": data}


def sse_text(text: str) -> dict:
    return format_sse_event("text", text)


def sse_artifact_open(data: str) -> dict:
    return format_sse_event("artifact_open", data)


def sse_artifact_chunk(data: str) -> dict:
    return format_sse_event("artifact_chunk", data)


def sse_artifact_close(data: str) -> dict:
    return format_sse_event("artifact_close", data)


def sse_reasoning(text: str) -> dict:
    return format_sse_event("reasoning", text)


def sse_tool(data: str) -> dict:
    return format_sse_event("tool", data)


def sse_error(error: str) -> dict:
    return format_sse_event("error", error)


def sse_init(data: dict) -> dict:
    return format_sse_event("init", json.dumps(data))


def sse_done(data: dict) -> dict:
    return format_sse_event("done", json.dumps(data))


EVENT_FORMATTERS = {
    "text": sse_text,
    "artifact_open": sse_artifact_open,
    "artifact_chunk": sse_artifact_chunk,
    "artifact_close": sse_artifact_close,
    "reasoning": sse_reasoning,
    "tool": sse_tool,
    "error": sse_error,
}
