import json
import logging
import re
from datetime import UTC, datetime

from ledgerlink.infrastructure.logging.context import current_log_context

REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = ("token", "secret", "password", "authorization")
_BEARER_PATTERN = re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9\-._~+/]+=*")
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def _scrub(text: str) -> str:
    return _BEARER_PATTERN.sub(lambda match: f"{match.group(1)}{REDACTED}", text)


def _extra_fields(record: logging.LogRecord) -> dict:
    fields = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_ATTRS or key.startswith("_"):
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            fields[key] = REDACTED
        elif isinstance(value, (str, int, float, bool)) or value is None:
            fields[key] = value
        else:
            fields[key] = str(value)
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, tagged with the request, user and tenant bound to the current context.

    ``extra=`` fields are copied into the payload; any whose name looks like a
    credential is replaced, and bearer values are masked in message text.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": _scrub(record.getMessage()),
            "logger": record.name,
        }
        payload.update(current_log_context())
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc_info"] = _scrub(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False)
