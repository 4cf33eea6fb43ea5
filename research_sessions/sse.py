from research_sessions.models import StreamEvent


def format_sse(event: StreamEvent) -> str:
    payload = event.model_dump_json()
    return f"event: {event.type}\nid: {event.seq}\ndata: {payload}\n\n"


def format_keepalive() -> str:
    return ": keep-alive\n\n"
