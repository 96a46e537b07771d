"""Base calendar store interface with async support."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..models import CalendarEvent, CalendarInfo
from ..config import Settings

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class NotFoundError(CalendarServiceError):
    """Calendar not found, or the name matches more than one calendar."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class TransientStoreError(CalendarServiceError):
    """Network or server side failure worth retrying."""
    pass


class RateLimitError(TransientStoreError):
    """Rate limiting errors."""
    pass


class BaseCalendarStore(ABC):
    """Abstract base class for calendar stores with async support."""

    def __init__(self, settings: Settings, name: str):
        """Initialize calendar store.

        Args:
            settings: Application settings
            name: Short store name used for the logger
        """
        self.settings = settings
        self.name = name
        self.logger = logger.getChild(name)
        self._authenticated = False

    @abstractmethod
    async def authenticate(self) -> None:
        """Authenticate with the calendar service.

        Raises:
            AuthenticationError: If authentication fails
        """
        pass

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        """Get list of available calendars.

        Raises:
            CalendarServiceError: If calendars cannot be retrieved
        """
        pass

    async def find_calendar(self, name: str) -> CalendarInfo:
        """Resolve a calendar by its display name.

        Raises:
            NotFoundError: If no calendar or several calendars carry the name
        """
        matches = [c for c in await self.list_calendars() if c.name == name]
        if not matches:
            raise NotFoundError(f"Calendar not found: {name}")
        if len(matches) > 1:
            raise NotFoundError(f"Multiple calendars named {name}: {[c.id for c in matches]}")
        return matches[0]

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        updated_min: Optional[datetime] = None,
        private_properties: Optional[Dict[str, str]] = None,
        show_deleted: bool = False,
    ) -> List[CalendarEvent]:
        """List events (series masters, not expanded) of a calendar.

        Args:
            calendar_id: Calendar ID
            time_min: Only events ending after this instant
            time_max: Only events starting before this instant
            updated_min: Only events modified at or after this instant
            private_properties: Required private extended property values
            show_deleted: Include cancelled events and instances

        Raises:
            NotFoundError: If the calendar does not exist
            TransientStoreError: On network or server failures
        """
        pass

    @abstractmethod
    async def list_instances(
        self,
        calendar_id: str,
        event_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        """List the materialized instances of a series."""
        pass

    @abstractmethod
    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        """Create a new event and return it as stored."""
        pass

    @abstractmethod
    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        changes: Dict[str, Any]
    ) -> CalendarEvent:
        """Apply a partial update to an event.

        Raises:
            EventNotFoundError: If event not found
        """
        pass

    @abstractmethod
    async def remove_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event.

        Raises:
            EventNotFoundError: If event not found or already deleted
        """
        pass

    def _ensure_authenticated(self):
        """Ensure the store is authenticated.

        Raises:
            AuthenticationError: If not authenticated
        """
        if not self._authenticated:
            raise AuthenticationError("Service not authenticated")
