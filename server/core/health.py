"""Health check utilities for daemon monitoring.

Provides uptime tracking and relay status for the /health endpoint.
"""
import time
from datetime import datetime, timezone
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from core.config import Settings
    from services.realtime.registry import SessionRegistry

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_health_status(registry: "SessionRegistry", settings: "Settings") -> Dict[str, Any]:
    """Get relay health status for /health endpoint.

    The provider is reported as configured or not; it is never probed here,
    since every probe would open a billable realtime session.
    """
    provider_configured = bool(settings.openai_api_key)
    status = {
        "status": "OK" if provider_configured else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "active_sessions": registry.active_count,
        "sessions_by_state": registry.snapshot(),
        "provider": {
            "configured": provider_configured,
            "model": settings.openai_realtime_model,
        },
        "environment": "development" if settings.is_development else "production",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    # Per-session detail exposes device ids; development only
    if settings.is_development:
        status["sessions"] = [session.to_dict() for session in registry.list_sessions()]
    return status
