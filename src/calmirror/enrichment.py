"""Extraction of local enrichment (setup/teardown, notes) from remote event text."""

import html
import math
import re
from typing import List, Optional

from .config import Settings
from .models import CalendarRole, Enrichment, SetupTeardown

NOTES_SEPARATOR = "\n\n"

_DURATION = r'(\d+(?:\.\d+)?)\s*(hours?|hrs?|hr|h|minutes?|mins?|min|m)?\b'
SETUP_PATTERN = re.compile(r'\bset[\s-]?up(?:\s+time)?\s*[:=-]?\s*' + _DURATION, re.IGNORECASE)
TEARDOWN_PATTERN = re.compile(r'\btear[\s-]?down(?:\s+time)?\s*[:=-]?\s*' + _DURATION, re.IGNORECASE)
TOTAL_PATTERN = re.compile(r'\btotal(?:\s+time)?\s*[:=-]?\s*' + _DURATION, re.IGNORECASE)
NOTES_PATTERN = re.compile(r'^\s*(?:internal\s+)?notes?\s*:\s*(.+?)\s*$', re.IGNORECASE | re.MULTILINE)

_TAGS = re.compile(r'<[^>]+>')
_BLOCK_TAGS = re.compile(r'<\s*(?:br|/p|/div|/li)\s*/?>', re.IGNORECASE)


def plain_text(body: Optional[str]) -> str:
    """Reduce an HTML event body to plain text, keeping line breaks."""
    if not body:
        return ""
    text = _BLOCK_TAGS.sub("\n", body)
    text = _TAGS.sub(" ", text)
    return html.unescape(text)


def _minutes(amount: str, unit: Optional[str]) -> int:
    value = float(amount)
    if unit and unit.lower().startswith('h'):
        value *= 60
    return int(round(value))


def extract_setup_teardown(text: Optional[str]) -> Optional[SetupTeardown]:
    """Parse setup/teardown minutes from free text.

    Recognizes "Setup: 30 min", "Set-up 1 hour", "Teardown: 15 min" and
    "Tear down: 15". A lone "Total: N min" is split in half, the first half
    rounded down. Returns None when nothing recognizable is present.
    """
    if not text:
        return None

    setup = SETUP_PATTERN.search(text)
    teardown = TEARDOWN_PATTERN.search(text)
    if setup or teardown:
        return SetupTeardown(
            setup_minutes=_minutes(*setup.groups()) if setup else None,
            teardown_minutes=_minutes(*teardown.groups()) if teardown else None,
        )

    total = TOTAL_PATTERN.search(text)
    if total:
        minutes = _minutes(*total.groups())
        return SetupTeardown(
            setup_minutes=math.floor(minutes / 2),
            teardown_minutes=math.ceil(minutes / 2),
        )
    return None


def extract_notes(text: Optional[str]) -> str:
    """Collect every "Notes: ..." line."""
    if not text:
        return ""
    return "\n".join(match.strip() for match in NOTES_PATTERN.findall(text) if match.strip())


def merge_notes(existing: Optional[str], new: Optional[str]) -> str:
    """Append new notes, skipping any piece the existing notes already contain."""
    existing = (existing or "").strip()
    pieces: List[str] = []
    for piece in (new or "").split("\n"):
        piece = piece.strip()
        if piece and piece not in existing and piece not in pieces:
            pieces.append(piece)
    if not pieces:
        return existing
    addition = "\n".join(pieces)
    return f"{existing}{NOTES_SEPARATOR}{addition}" if existing else addition


def apply_registration_text(enrichment: Enrichment, subject: Optional[str], body: Optional[str]) -> Enrichment:
    """Return a copy of the enrichment with values stated in the event text applied."""
    text = "\n".join(part for part in (subject, plain_text(body)) if part)
    updated = enrichment.model_copy()

    timing = extract_setup_teardown(text)
    if timing is not None:
        if timing.setup_minutes is not None:
            updated.setup_minutes = timing.setup_minutes
        if timing.teardown_minutes is not None:
            updated.teardown_minutes = timing.teardown_minutes

    notes = extract_notes(text)
    if notes:
        updated.internal_notes = merge_notes(updated.internal_notes, notes)
    return updated


def default_enrichment(settings: Settings) -> Enrichment:
    return Enrichment(
        setup_minutes=settings.default_setup_minutes,
        teardown_minutes=settings.default_teardown_minutes,
    )


def is_registration_calendar(calendar_id: str, settings: Settings) -> bool:
    if calendar_id in settings.registration_calendar_ids:
        return True
    lowered = calendar_id.lower()
    return any(marker in lowered for marker in settings.registration_calendar_markers)


def calendar_role(calendar_id: str, settings: Settings) -> CalendarRole:
    """Tag a calendar shared or primary by the markers in its id."""
    lowered = calendar_id.lower()
    if is_registration_calendar(calendar_id, settings) or any(
        marker in lowered for marker in settings.shared_calendar_markers
    ):
        return CalendarRole.SHARED
    return CalendarRole.PRIMARY
