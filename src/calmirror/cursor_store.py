"""Persisted delta-cursor state per (owner, calendar)."""

import logging
from datetime import datetime
from typing import List, Optional

import pytz
from sqlalchemy.exc import SQLAlchemyError

from .database import DatabaseManager
from .models import SyncCursor

logger = logging.getLogger(__name__)


def _short(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    return token if len(token) <= 12 else f"{token[:12]}..."


class DeltaCursorStore:
    """One cursor row per (owner, calendar), mutated only by the orchestrator.

    Storage errors never reach callers: the full-sync default is returned instead,
    so the next run falls back to a full sync rather than aborting.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('cursor_store')

    def get(self, owner_id: str, calendar_id: str) -> SyncCursor:
        """Return the stored cursor, or a full-sync default if none exists."""
        try:
            with self.db_manager.get_session() as session:
                row = self.db_manager.get_cursor(session, owner_id, calendar_id)
                if row is None:
                    return SyncCursor(owner_id=owner_id, calendar_id=calendar_id)
                if not row.full_sync_required and not row.cursor_token:
                    # Row written inconsistently; treat as needing a full sync
                    self.logger.warning(f"Cursor for {owner_id}/{calendar_id} has no token, forcing full sync")
                    return SyncCursor(
                        owner_id=owner_id,
                        calendar_id=calendar_id,
                        last_synced_at=row.last_synced_at,
                    )
                return self.db_manager.to_sync_cursor(row)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to read cursor for {owner_id}/{calendar_id}, defaulting to full sync: {e}")
            return SyncCursor(owner_id=owner_id, calendar_id=calendar_id)

    def advance(self, owner_id: str, calendar_id: str, new_token: str) -> SyncCursor:
        """Store the token from the final page and clear the full-sync flag.

        Idempotent: advancing twice with the same token leaves one identical row.
        If the write fails the full-sync default is returned and the stored row
        is left as it was.
        """
        if not new_token:
            raise ValueError("Cannot advance a cursor without a delta token")
        now = datetime.now(pytz.UTC)
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.upsert_cursor(
                    session, owner_id, calendar_id,
                    cursor_token=new_token,
                    full_sync_required=False,
                    last_synced_at=now,
                )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to advance cursor for {owner_id}/{calendar_id}: {e}")
            return SyncCursor(owner_id=owner_id, calendar_id=calendar_id)
        self.logger.info(f"Advanced cursor for {owner_id}/{calendar_id} to {_short(new_token)}")
        return SyncCursor(
            owner_id=owner_id,
            calendar_id=calendar_id,
            cursor_token=new_token,
            full_sync_required=False,
            last_synced_at=now,
        )

    def reset(self, owner_id: str, calendar_id: str) -> SyncCursor:
        """Drop the token and require a full sync on the next run."""
        try:
            with self.db_manager.get_session() as session:
                row = self.db_manager.upsert_cursor(
                    session, owner_id, calendar_id,
                    cursor_token=None,
                    full_sync_required=True,
                )
                last_synced_at = row.last_synced_at
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to reset cursor for {owner_id}/{calendar_id}: {e}")
            return SyncCursor(owner_id=owner_id, calendar_id=calendar_id)
        self.logger.info(f"Reset cursor for {owner_id}/{calendar_id}; next sync will be full")
        return SyncCursor(
            owner_id=owner_id,
            calendar_id=calendar_id,
            last_synced_at=last_synced_at,
        )

    def list_cursors(self, owner_id: Optional[str] = None) -> List[SyncCursor]:
        try:
            with self.db_manager.get_session() as session:
                return [
                    self.db_manager.to_sync_cursor(row)
                    for row in self.db_manager.list_cursors(session, owner_id)
                    if row.full_sync_required or row.cursor_token
                ]
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to list cursors: {e}")
            return []
