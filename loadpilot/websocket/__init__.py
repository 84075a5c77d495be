"""Live update streaming (SSE and WebSocket)."""

from .streaming import format_sse, sse_status_stream, stream_status

__all__ = ["format_sse", "sse_status_stream", "stream_status"]
