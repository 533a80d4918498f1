"""Centralized constants for the realtime relay.

Single source of truth for wire-level values shared by the transports,
so that the WebSocket and SSE paths cannot drift apart.
"""

from typing import Dict

# =============================================================================
# CONVERSATION IDS
# =============================================================================

# Server-generated ids: "conv-" + uuid4 hex
CONVERSATION_ID_PREFIX = "conv-"

# =============================================================================
# WEBSOCKET CLOSE CODES (RFC 6455)
# =============================================================================

WS_CLOSE_POLICY_VIOLATION = 1008  # bad credential, too many malformed frames
WS_CLOSE_INTERNAL_ERROR = 1011  # unexpected failure in the connection loop

# =============================================================================
# SERVER-SENT EVENTS
# =============================================================================

SSE_MEDIA_TYPE = "text/event-stream"

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx response buffering
}

SSE_KEEPALIVE_COMMENT = ": keepalive\n\n"

# =============================================================================
# CLIENT-FACING MESSAGES
# =============================================================================

INTERNAL_ERROR_MESSAGE = "Internal relay error"
