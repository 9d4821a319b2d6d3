class CalendarError(Exception):
    """Base exception for all calendar core errors."""
    pass


class InvalidUserIdError(CalendarError, ValueError):
    """Raised when a call is made with an empty or malformed user id."""
    pass


class AggregationError(CalendarError):
    """Raised when a source store cannot be read while aggregating."""
    pass


class ReconcileError(CalendarError):
    """Raised when an import batch cannot be reconciled with the store."""
    pass


class ImportParseError(CalendarError):
    """Raised when an import payload cannot be read as a calendar."""
    pass


class EventNotFoundError(CalendarError, LookupError):
    """Raised when a personal event id does not exist for the user."""
    pass


class ConfigError(CalendarError, ValueError):
    """Raised when a config update names unknown keys or invalid values."""
    pass


def require_user_id(user_id: str) -> str:
    cleaned = str(user_id or "").strip()
    if not cleaned:
        raise InvalidUserIdError("user id must be a non-empty string")
    if any(ch in cleaned for ch in "/\n\r\t"):
        raise InvalidUserIdError(f"malformed user id: {user_id!r}")
    return cleaned
