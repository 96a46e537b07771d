"""Calendar store interfaces and implementations."""

from .base import (
    BaseCalendarStore,
    CalendarServiceError,
    AuthenticationError,
    NotFoundError,
    EventNotFoundError,
    TransientStoreError,
    RateLimitError,
)
from .google import GoogleCalendarStore

__all__ = [
    'BaseCalendarStore',
    'CalendarServiceError',
    'AuthenticationError',
    'NotFoundError',
    'EventNotFoundError',
    'TransientStoreError',
    'RateLimitError',
    'GoogleCalendarStore',
]
