"""Google Calendar store implementation with async support."""

import asyncio
import json
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseCalendarStore,
    CalendarServiceError,
    AuthenticationError,
    NotFoundError,
    EventNotFoundError,
    TransientStoreError,
    RateLimitError,
)
from ..models import CalendarEvent, CalendarInfo
from ..config import Settings

MAX_RESULTS = 2500


def map_http_error(error: Exception, what: str) -> CalendarServiceError:
    """Translate a Google API error into the store error taxonomy."""
    if not isinstance(error, HttpError):
        if isinstance(error, CalendarServiceError):
            return error
        # socket errors, timeouts and broken connections from httplib2
        if isinstance(error, (OSError, TimeoutError, ConnectionError)):
            return TransientStoreError(f"{what} failed: {error}")
        return CalendarServiceError(f"{what} failed: {error}")

    status = error.resp.status
    if status in (404, 410):
        return NotFoundError(f"{what}: not found")
    if status == 429:
        return RateLimitError(f"{what}: rate limited")
    if status == 403 and "rateLimitExceeded" in str(error):
        return RateLimitError(f"{what}: rate limited")
    if status >= 500:
        return TransientStoreError(f"{what}: server error {status}")
    return CalendarServiceError(f"{what} failed: {error}")


class GoogleCalendarStore(BaseCalendarStore):
    """Google Calendar store with async support."""

    def __init__(self, settings: Settings, service=None):
        """Initialize Google Calendar store.

        Args:
            settings: Application settings
            service: Prebuilt ``googleapiclient`` resource, skips OAuth when given
        """
        super().__init__(settings, "google")
        self.service = service
        if service is not None:
            self._authenticated = True

    async def authenticate(self) -> None:
        """Authenticate with Google Calendar API."""
        if self._authenticated:
            return
        try:
            creds = None
            token_path = self.settings.google_token_path

            if token_path.exists():
                creds = Credentials.from_authorized_user_file(
                    str(token_path),
                    self.settings.google_scopes
                )

            if not creds or not creds.valid:
                if creds and creds.expired and creds.refresh_token:
                    creds.refresh(Request())
                else:
                    self._write_client_secrets()
                    flow = InstalledAppFlow.from_client_secrets_file(
                        str(self.settings.google_credentials_path),
                        self.settings.google_scopes
                    )
                    if os.path.exists('/.dockerenv') or os.environ.get('DOCKER_CONTAINER') == 'true':
                        raise AuthenticationError(
                            f"Google OAuth token not found at {token_path}. "
                            "Run 'calmirror calendars' on a machine with a browser and copy the token file."
                        )
                    self.logger.info("Starting Google OAuth flow in browser...")
                    creds = flow.run_local_server(port=0)
                    self.logger.info("OAuth flow completed successfully")

                token_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
                with open(token_path, 'w') as token:
                    token.write(creds.to_json())
                token_path.chmod(0o600)

            self.service = build('calendar', 'v3', credentials=creds, cache_discovery=False)
            self._authenticated = True
            self.logger.info("Successfully authenticated with Google Calendar")

        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Google Calendar authentication failed: {e}")

    def _write_client_secrets(self) -> None:
        """Write the OAuth client secrets file expected by the installed-app flow."""
        credentials_data = {
            "installed": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": "https://oauth2.googleapis.com/token",
                "auth_provider_x509_cert_url": "https://www.googleapis.com/oauth2/v1/certs",
                "redirect_uris": ["http://localhost"]
            }
        }
        credentials_path = self.settings.google_credentials_path
        credentials_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(credentials_path, 'w') as f:
            json.dump(credentials_data, f)
        credentials_path.chmod(0o600)

    async def _execute(self, request_factory: Callable[[], Any], what: str) -> Dict[str, Any]:
        """Run a blocking API request in the default executor."""
        self._ensure_authenticated()
        try:
            return await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: request_factory().execute()
            )
        except Exception as e:
            error = map_http_error(e, what)
            if error is e:
                raise
            if isinstance(error, RateLimitError):
                self.logger.warning("Google API rate limited, retrying...")
            raise error from e

    async def _read(self, request_factory: Callable[[], Any], what: str) -> Dict[str, Any]:
        """Idempotent read, retried on transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True
        ):
            with attempt:
                return await self._execute(request_factory, what)

    async def list_calendars(self) -> List[CalendarInfo]:
        """Get list of Google calendars."""
        calendars = []
        page_token = None
        while True:
            result = await self._read(
                lambda: self.service.calendarList().list(pageToken=page_token, showHidden=True),
                "List calendars"
            )
            for cal_data in result.get('items', []):
                calendars.append(CalendarInfo(
                    id=cal_data['id'],
                    name=cal_data.get('summary', 'Unnamed Calendar'),
                    timezone=cal_data.get('timeZone', 'UTC'),
                    access_role=cal_data.get('accessRole'),
                    is_primary=cal_data.get('primary', False),
                ))
            page_token = result.get('nextPageToken')
            if not page_token:
                return calendars

    async def _list_paged(self, method: Callable[..., Any], params: Dict[str, Any], what: str) -> List[CalendarEvent]:
        events = []
        page_token = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params['pageToken'] = page_token
            result = await self._read(lambda: method(**page_params), what)
            for event_data in result.get('items', []):
                try:
                    events.append(CalendarEvent.from_resource(event_data))
                except ValueError as e:
                    raise CalendarServiceError(
                        f"Malformed Google event {event_data.get('id')}: {e}"
                    ) from e
            page_token = result.get('nextPageToken')
            if not page_token:
                return events

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
        """Get events of a Google calendar, series unexpanded."""
        self._ensure_authenticated()
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'maxResults': MAX_RESULTS,
            'singleEvents': False,
            'showDeleted': show_deleted,
        }
        if time_min is not None:
            params['timeMin'] = time_min.isoformat()
        if time_max is not None:
            params['timeMax'] = time_max.isoformat()
        if updated_min is not None:
            params['updatedMin'] = updated_min.isoformat()
        if private_properties:
            params['privateExtendedProperty'] = [
                f"{key}={value}" for key, value in sorted(private_properties.items())
            ]

        events = await self._list_paged(
            self.service.events().list, params, f"List events of {calendar_id}"
        )
        self.logger.debug(f"Fetched {len(events)} events from {calendar_id}")
        return events

    async def list_instances(
        self,
        calendar_id: str,
        event_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        """Get the instances of a recurring Google event."""
        self._ensure_authenticated()
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'eventId': event_id,
            'maxResults': MAX_RESULTS,
            'showDeleted': True,
        }
        if time_min is not None:
            params['timeMin'] = time_min.isoformat()
        if time_max is not None:
            params['timeMax'] = time_max.isoformat()
        return await self._list_paged(
            self.service.events().instances, params, f"List instances of {event_id}"
        )

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        """Create a Google Calendar event."""
        body = event.to_resource()
        body.pop('id', None)
        created = await self._execute(
            lambda: self.service.events().insert(calendarId=calendar_id, body=body),
            f"Insert event into {calendar_id}"
        )
        return CalendarEvent.from_resource(created)

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        changes: Dict[str, Any]
    ) -> CalendarEvent:
        """Patch a Google Calendar event."""
        try:
            patched = await self._execute(
                lambda: self.service.events().patch(
                    calendarId=calendar_id,
                    eventId=event_id,
                    body=changes
                ),
                f"Patch event {event_id}"
            )
        except NotFoundError as e:
            raise EventNotFoundError(f"Google event {event_id} not found") from e
        return CalendarEvent.from_resource(patched)

    async def remove_event(self, calendar_id: str, event_id: str) -> None:
        """Delete a Google Calendar event."""
        try:
            await self._execute(
                lambda: self.service.events().delete(
                    calendarId=calendar_id,
                    eventId=event_id
                ),
                f"Delete event {event_id}"
            )
        except NotFoundError as e:
            raise EventNotFoundError(f"Google event {event_id} not found") from e
