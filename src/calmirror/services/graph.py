"""Microsoft Graph calendar delta-query service."""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseCalendarService, CalendarServiceError, AuthenticationError, CursorExpiredError,
    TransientRemoteError, RateLimitError
)
from ..config import Settings
from ..models import DeltaPage, RemoteEvent


class GraphCalendarService(BaseCalendarService):
    """Reads calendar changes through Graph delta queries.

    The opaque cursor stored locally is the ``@odata.deltaLink`` URL and the
    continuation is the ``@odata.nextLink`` URL, both used verbatim.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings, 'graph')
        self._client = httpx.AsyncClient(
            base_url=settings.graph_base_url.rstrip('/'),
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_delta_page(
        self,
        owner_id: str,
        calendar_id: str,
        *,
        cursor_token: Optional[str] = None,
        continuation: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> DeltaPage:
        if not self.settings.graph_access_token:
            raise AuthenticationError("No Graph access token configured")

        if continuation:
            url = continuation
        elif cursor_token:
            url = cursor_token
        else:
            url = (
                f"/users/{quote(owner_id, safe='@')}"
                f"/calendars/{quote(calendar_id, safe='')}/events/delta"
            )

        data = await self._get_with_retry(url, page_size or self.settings.page_size)
        return self._parse_page(data)

    async def _get_with_retry(self, url: str, page_size: int) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(multiplier=self.settings.retry_delay_seconds, max=30),
            retry=retry_if_exception_type(TransientRemoteError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._get(url, page_size)

    async def _get(self, url: str, page_size: int) -> Dict[str, Any]:
        headers = {
            'Authorization': f"Bearer {self.settings.graph_access_token}",
            'Prefer': f'odata.maxpagesize={page_size}, outlook.body-content-type="text", outlook.timezone="UTC"',
        }
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.TransportError as e:
            self.logger.warning(f"Graph request failed: {e}")
            raise TransientRemoteError(f"Network error talking to Graph: {e}")

        status = response.status_code
        if status == 410:
            self.logger.warning("Graph delta cursor expired/invalid (410)")
            raise CursorExpiredError("Delta cursor is no longer valid", status)
        if status in (401, 403):
            raise AuthenticationError(f"Graph rejected credentials ({status}): {self._error_message(response)}", status)
        if status == 429:
            self.logger.warning("Graph API rate limited, retrying...")
            retry_after = response.headers.get('Retry-After')
            raise RateLimitError(
                "Rate limited by Graph",
                status,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise TransientRemoteError(f"Graph server error ({status}): {self._error_message(response)}", status)
        if status >= 400:
            raise CalendarServiceError(f"Graph request failed ({status}): {self._error_message(response)}", status)

        try:
            return response.json()
        except ValueError as e:
            raise TransientRemoteError(f"Unreadable Graph response: {e}", status)

    def _parse_page(self, data: Dict[str, Any]) -> DeltaPage:
        items: List[RemoteEvent] = []
        malformed: List[Dict[str, Any]] = []
        for item in data.get('value', []):
            try:
                items.append(self._format_graph_event(item))
            except (ValidationError, KeyError, TypeError) as e:
                self.logger.warning(f"Failed to format Graph event {item.get('id')}: {e}")
                malformed.append({'remote_id': item.get('id') or '', 'reason': str(e)})

        continuation = data.get('@odata.nextLink')
        return DeltaPage(
            items=items,
            malformed=malformed,
            continuation=continuation,
            new_delta_token=None if continuation else data.get('@odata.deltaLink'),
        )

    def _format_graph_event(self, item: Dict[str, Any]) -> RemoteEvent:
        """Convert a Graph event resource (or removal stub) to a RemoteEvent."""
        if '@removed' in item:
            return RemoteEvent(id=item['id'], removed=True, original_data=item)

        location = (item.get('location') or {}).get('displayName') or None
        if not location and item.get('locations'):
            names = [loc.get('displayName') for loc in item['locations'] if loc.get('displayName')]
            location = '; '.join(names) or None

        attendees = []
        for attendee in item.get('attendees') or []:
            address = attendee.get('emailAddress') or {}
            attendees.append({
                'email': address.get('address'),
                'name': address.get('name'),
                'type': attendee.get('type'),
                'response': (attendee.get('status') or {}).get('response'),
            })

        return RemoteEvent(
            id=item['id'],
            global_uid=item.get('iCalUId'),
            subject=item.get('subject') or '',
            start=item.get('start'),
            end=item.get('end'),
            location=location,
            categories=item.get('categories') or [],
            body=(item.get('body') or {}).get('content'),
            attendees=attendees,
            last_modified=item.get('lastModifiedDateTime'),
            change_key=item.get('changeKey'),
            removed=False,
            original_data=item,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get('error', {}).get('message') or response.text
        except ValueError:
            return response.text
