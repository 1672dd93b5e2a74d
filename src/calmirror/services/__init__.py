"""Remote calendar service interfaces and implementations."""

from .base import (
    BaseCalendarService, CalendarServiceError, AuthenticationError, CursorExpiredError,
    TransientRemoteError, RateLimitError
)
from .graph import GraphCalendarService

__all__ = [
    'BaseCalendarService',
    'CalendarServiceError',
    'AuthenticationError',
    'CursorExpiredError',
    'TransientRemoteError',
    'RateLimitError',
    'GraphCalendarService',
]
