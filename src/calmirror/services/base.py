"""Base remote calendar service interface with async support."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

from ..models import DeltaPage
from ..config import Settings

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(CalendarServiceError):
    """Authentication or permission errors; not recoverable within a sync."""
    pass


class CursorExpiredError(CalendarServiceError):
    """The delta cursor is no longer accepted (HTTP 410); a full sync is needed."""
    pass


class TransientRemoteError(CalendarServiceError):
    """Network, throttling or server-side failures a later run can retry."""
    pass


class RateLimitError(TransientRemoteError):
    """Rate limiting errors."""

    def __init__(self, message: str, status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class BaseCalendarService(ABC):
    """Abstract base class for delta-capable calendar services."""

    def __init__(self, settings: Settings, name: str):
        """Initialize calendar service.

        Args:
            settings: Application settings
            name: Short service name used for the logger
        """
        self.settings = settings
        self.name = name
        self.logger = logger.getChild(name)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @abstractmethod
    async def fetch_delta_page(
        self,
        owner_id: str,
        calendar_id: str,
        *,
        cursor_token: Optional[str] = None,
        continuation: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> DeltaPage:
        """Fetch one page of changes.

        Exactly one of the three modes applies: follow ``continuation`` when
        given, else resume from ``cursor_token``, else start a full read.

        Args:
            owner_id: Mailbox owner
            calendar_id: Remote calendar id
            cursor_token: Delta token stored after the previous complete loop
            continuation: Pointer returned by the previous page of this loop
            page_size: Preferred number of items per page

        Returns:
            The page's change records and either a continuation or a new delta token

        Raises:
            CursorExpiredError: If the remote no longer accepts cursor_token
            TransientRemoteError: If the request failed in a retryable way
            AuthenticationError: If credentials are missing or rejected
            CalendarServiceError: For any other remote failure
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass

    async def test_connection(self, owner_id: str, calendar_id: str) -> Dict[str, Any]:
        """Fetch a single page to verify credentials and reachability.

        Returns:
            Dictionary with connection test results
        """
        try:
            page = await self.fetch_delta_page(owner_id, calendar_id, page_size=1)
            return {
                'success': True,
                'sample_events': len(page.items),
                'has_more': not page.is_final,
            }
        except CalendarServiceError as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            }
