import logging
import re
import threading
from typing import Iterable

from .config import RuntimeConfig

KEY_PATTERNS = [
    re.compile(r"(apikey=)([^&\s]+)", flags=re.IGNORECASE),
    re.compile(r"(X-Api-Key['\"]?[:=]\s*['\"]?)([A-Za-z0-9_\-]+)", flags=re.IGNORECASE),
    re.compile(r"(token=)([^&\s]+)", flags=re.IGNORECASE),
    # Discord webhook secrets: /api/webhooks/<id>/<token>
    re.compile(r"(/api/webhooks/\d+/)([A-Za-z0-9_\-]+)"),
]

_known_secrets: set[str] = set()
_secrets_lock = threading.Lock()


def register_secrets(values: Iterable[str]) -> None:
    """Mask these literal values wherever they show up in a log line."""
    with _secrets_lock:
        # Very short values would mask ordinary words.
        _known_secrets.update(v for v in (str(x or "").strip() for x in values) if len(v) >= 6)


def config_secrets(config: RuntimeConfig) -> list[str]:
    n = config.notifications
    values = [t.arr.api_key for t in config.all_targets()]
    values.extend([n.pushover_user_key, n.pushover_api_token, n.notifiarr_passthrough_webhook])
    return [v for v in values if v]


def redact_secrets(message: str) -> str:
    redacted = message
    for pattern in KEY_PATTERNS:
        redacted = pattern.sub(r"\1***", redacted)
    with _secrets_lock:
        known = sorted(_known_secrets, key=len, reverse=True)
    for secret in known:
        redacted = redacted.replace(secret, "***")
    return redacted


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return redact_secrets(super().format(record))


def setup_logging(level: str, secrets: Iterable[str] = ()) -> None:
    register_secrets(secrets)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    root.addHandler(handler)
