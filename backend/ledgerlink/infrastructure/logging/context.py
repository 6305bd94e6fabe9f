from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

LOG_CONTEXT_FIELDS = ("request_id", "user_id", "tenant_id")

_bound_fields: ContextVar[dict[str, str]] = ContextVar("ledgerlink_log_context", default={})


def current_log_context() -> dict[str, str | None]:
    bound = _bound_fields.get()
    return {name: bound.get(name) for name in LOG_CONTEXT_FIELDS}


@contextmanager
def bind_log_context(**fields: object) -> Iterator[None]:
    """Attach fields to every log line emitted inside the block; ``None`` values leave a field as it was."""
    unknown = set(fields) - set(LOG_CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported log context fields: {', '.join(sorted(unknown))}")
    merged = dict(_bound_fields.get())
    merged.update({name: str(value) for name, value in fields.items() if value is not None})
    token = _bound_fields.set(merged)
    try:
        yield
    finally:
        _bound_fields.reset(token)
