import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("channel_sync")


_SENSITIVE_KEYS = {
    "client_secret",
    "access_token",
    "refresh_token",
    "authorization",
    "x-amz-access-token",
    "x-amz-security-token",
    "x-shopify-access-token",
    "code",
}


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "None"
    value = str(value)
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


class ChannelCallLogger:
    """Logs outbound marketplace calls without leaking credentials.

    Keeps a small in-memory ring of recent calls so operators can inspect the
    last few requests for an account from a debug endpoint or a shell.
    """

    def __init__(self, max_entries: int = 500):
        self.entries = []
        self.max_entries = max_entries

    def log_call(
        self,
        channel: str,
        method: str,
        url: str,
        *,
        status_code: Optional[int] = None,
        attempt: int = 1,
        duration_ms: Optional[float] = None,
        headers: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channel": channel,
            "method": method,
            "url": url,
            "status_code": status_code,
            "attempt": attempt,
            "duration_ms": round(duration_ms, 1) if duration_ms is not None else None,
            "headers": self._sanitize(headers) if headers else None,
            "error": error,
        }
        self.entries.append(entry)
        if len(self.entries) > self.max_entries:
            self.entries.pop(0)

        if error:
            logger.warning(
                "[%s] %s %s attempt=%s status=%s error=%s",
                channel, method, url, attempt, status_code, error,
            )
        else:
            logger.info(
                "[%s] %s %s attempt=%s status=%s duration_ms=%s",
                channel, method, url, attempt, status_code, entry["duration_ms"],
            )
        return entry

    def _sanitize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = {}
        for key, value in data.items():
            if key.lower() in _SENSITIVE_KEYS:
                sanitized[key] = mask_secret(value)
            else:
                sanitized[key] = value
        return sanitized

    def recent(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.entries[-limit:]
        return list(self.entries)

    def clear(self):
        self.entries = []


channel_call_logger = ChannelCallLogger()
