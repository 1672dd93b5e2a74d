"""Free-text location resolution against canonical location records."""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from .config import Settings
from .database import DatabaseManager, LocationDB
from .models import LocationEntity, LocationMatch, LocationStatus, MatchType

logger = logging.getLogger(__name__)

LOCATION_DELIMITER = ';'
DISPLAY_SEPARATOR = '; '

_PUNCTUATION = re.compile(r'[^\w\s-]|_')
_WHITESPACE = re.compile(r'\s+')
# Room codes look like "TPL", "B2" or "NURSERY"; at least one letter, so years and times never match
_CODE_TOKEN = re.compile(r'\b(?=[A-Z0-9-]*[A-Z])[A-Z0-9][A-Z0-9-]{1,9}\b')

VIRTUAL_MEETING_PATTERNS = [
    re.compile(r'^https?://', re.IGNORECASE),
    re.compile(r'zoom\.us/', re.IGNORECASE),
    re.compile(r'teams\.microsoft\.com', re.IGNORECASE),
    re.compile(r'meet\.google\.com', re.IGNORECASE),
    re.compile(r'webex\.com', re.IGNORECASE),
    re.compile(r'gotomeeting\.com', re.IGNORECASE),
    re.compile(r'bluejeans\.com', re.IGNORECASE),
    re.compile(r'whereby\.com', re.IGNORECASE),
    re.compile(r'meet\.jit\.si', re.IGNORECASE),
]

VIRTUAL_PLATFORMS = [
    ('zoom.us', 'Zoom'),
    ('teams.microsoft.com', 'Microsoft Teams'),
    ('meet.google.com', 'Google Meet'),
    ('webex.com', 'Webex'),
    ('gotomeeting.com', 'GoToMeeting'),
    ('bluejeans.com', 'BlueJeans'),
    ('whereby.com', 'Whereby'),
    ('meet.jit.si', 'Jitsi Meet'),
]
DEFAULT_VIRTUAL_PLATFORM = 'Virtual Meeting'


def normalize_location(text: Optional[str]) -> str:
    """Lower-case, strip punctuation except hyphens, collapse whitespace."""
    if not text:
        return ''
    lowered = _PUNCTUATION.sub('', text.lower())
    return _WHITESPACE.sub(' ', lowered).strip()


def split_locations(text: Optional[str]) -> List[str]:
    """Split a multi-location string into trimmed, non-empty segments."""
    if not text:
        return []
    return [segment.strip() for segment in text.split(LOCATION_DELIMITER) if segment.strip()]


def is_virtual_meeting(text: Optional[str]) -> bool:
    if not text:
        return False
    candidate = text.strip()
    return any(pattern.search(candidate) for pattern in VIRTUAL_MEETING_PATTERNS)


def virtual_platform(text: str) -> str:
    """Platform name for a meeting URL, falling back to a generic label."""
    lowered = text.lower()
    for domain, platform in VIRTUAL_PLATFORMS:
        if domain in lowered:
            return platform
    return DEFAULT_VIRTUAL_PLATFORM


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def similarity_score(
    a: str,
    b: str,
    containment_bonus: float = 0.2,
    first_word_bonus: float = 0.1,
    shared_word_bonus: float = 0.1,
) -> float:
    """Edit-distance similarity of two normalized strings plus word heuristics, capped at 1.0."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    score = 1 - (levenshtein(a, b) / max(len(a), len(b)))

    if a in b or b in a:
        score += containment_bonus

    words_a = a.split()
    words_b = b.split()
    if words_a and words_b and words_a[0] == words_b[0]:
        score += first_word_bonus

    significant_a = {word for word in words_a if len(word) > 3}
    significant_b = {word for word in words_b if len(word) > 3}
    if significant_a and significant_b:
        shared = significant_a & significant_b
        score += shared_word_bonus * (len(shared) / max(len(significant_a), len(significant_b)))

    return min(score, 1.0)


@dataclass
class LocationResolution:
    """Everything an event record needs from its free-text location."""

    matches: List[LocationMatch] = field(default_factory=list)
    location_ids: List[UUID] = field(default_factory=list)
    display_text: str = ''
    virtual_meeting_url: Optional[str] = None
    virtual_platform: Optional[str] = None


class LocationResolver:
    """Resolves free-text locations to canonical records, creating them on a miss.

    Locations are a single pool shared by every owner. Alias writes are
    add-if-absent so concurrent administrative merges never lose aliases.
    """

    def __init__(self, db_manager: DatabaseManager, settings: Settings):
        self.db_manager = db_manager
        self.settings = settings
        self.logger = logger.getChild('resolver')

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, free_text: Optional[str], create_missing: bool = True) -> List[LocationMatch]:
        """Resolve every ';'-separated segment independently.

        Args:
            free_text: Raw location string from the remote event
            create_missing: Create a new location when nothing scores above threshold

        Returns:
            One match per non-empty segment, in input order
        """
        segments = split_locations(free_text)
        if not segments:
            return []
        with self.db_manager.get_session() as session:
            return [self._resolve_segment(session, segment, create_missing) for segment in segments]

    def resolve_event_location(self, free_text: Optional[str]) -> LocationResolution:
        """Resolve an event's location and build its display fields."""
        resolution = LocationResolution()
        if not free_text or not free_text.strip():
            return resolution

        resolution.matches = self.resolve(free_text)
        labels: Dict[UUID, str] = {}
        if resolution.matches:
            labels = self._labels([m.entity_id for m in resolution.matches if m.matched])

        display_parts: List[str] = []
        for match in resolution.matches:
            if match.match_type == MatchType.VIRTUAL:
                if resolution.virtual_meeting_url is None:
                    resolution.virtual_meeting_url = match.segment
                    resolution.virtual_platform = match.virtual_platform
                display_parts.append(DEFAULT_VIRTUAL_PLATFORM)
            elif match.matched:
                if match.entity_id not in resolution.location_ids:
                    resolution.location_ids.append(match.entity_id)
                    display_parts.append(labels.get(match.entity_id, match.segment))
            else:
                display_parts.append(match.segment)
        resolution.display_text = DISPLAY_SEPARATOR.join(display_parts)
        return resolution

    def _resolve_segment(self, session: Session, segment: str, create_missing: bool) -> LocationMatch:
        if is_virtual_meeting(segment):
            return LocationMatch(
                segment=segment,
                confidence=1.0,
                match_type=MatchType.VIRTUAL,
                virtual_platform=virtual_platform(segment),
            )

        normalized = normalize_location(segment)
        if not normalized:
            return LocationMatch(segment=segment)

        location = self._exact_match(session, normalized)
        if location is not None:
            self.db_manager.record_location_use(session, location, segment)
            return LocationMatch(segment=segment, entity_id=location.id, confidence=1.0, match_type=MatchType.EXACT)

        location = self._code_match(session, segment)
        if location is not None:
            self.db_manager.record_location_use(session, location, segment)
            return LocationMatch(segment=segment, entity_id=location.id, confidence=0.95, match_type=MatchType.CODE)

        location, score = self._fuzzy_match(session, normalized)
        if location is not None:
            match_type = MatchType.FUZZY
            if segment in (location.seen_variations or []):
                # Seen before: promote it so the next lookup is exact
                match_type = MatchType.VARIATION
                self.db_manager.add_alias(session, location.id, normalized)
            self.db_manager.record_location_use(session, location, segment)
            self.logger.debug(f"Fuzzy matched '{segment}' to '{location.name}' ({score:.2f})")
            return LocationMatch(segment=segment, entity_id=location.id, confidence=score, match_type=match_type)

        if not create_missing:
            return LocationMatch(segment=segment)

        location = self.db_manager.create_location(
            session,
            name=segment,
            normalized_name=normalized,
            seen_variations=[segment],
        )
        self.db_manager.add_alias(session, location.id, normalized)
        location = self._follow_merged(session, location) or location
        self.db_manager.record_location_use(session, location)
        self.logger.info(f"Created location '{location.name}' for unmatched text")
        return LocationMatch(segment=segment, entity_id=location.id, confidence=1.0, match_type=MatchType.CREATED)

    def _exact_match(self, session: Session, normalized: str) -> Optional[LocationDB]:
        candidates = self.db_manager.find_locations_by_normalized(session, [normalized])
        # Live records first; merged ones only count through their target
        candidates.sort(key=lambda row: row.status == LocationStatus.MERGED.value)
        for candidate in candidates:
            target = self._follow_merged(session, candidate)
            if target is not None:
                return target
        return None

    def _code_match(self, session: Session, segment: str) -> Optional[LocationDB]:
        tokens = set(_CODE_TOKEN.findall(segment))
        if not tokens:
            return None
        for location in self.db_manager.get_locations(session, include_merged=False):
            if location.location_code and location.location_code.upper() in tokens:
                return location
        return None

    def _fuzzy_match(self, session: Session, normalized: str) -> Tuple[Optional[LocationDB], float]:
        best: Optional[LocationDB] = None
        best_score = 0.0
        for location in self.db_manager.get_locations(session, include_merged=False):
            candidates = {location.normalized_name} | {alias.alias for alias in location.aliases}
            score = max(self._score(normalized, candidate) for candidate in candidates)
            if score > best_score:
                best, best_score = location, score
        if best is None or best_score < self.settings.location_match_threshold:
            return None, 0.0
        return best, round(best_score, 4)

    def _score(self, a: str, b: str) -> float:
        return similarity_score(
            a, b,
            containment_bonus=self.settings.location_containment_bonus,
            first_word_bonus=self.settings.location_first_word_bonus,
            shared_word_bonus=self.settings.location_shared_word_bonus,
        )

    def _follow_merged(self, session: Session, location: LocationDB) -> Optional[LocationDB]:
        """Dereference a merged chain to its live target; None on a cycle or dangling link."""
        seen: Set[UUID] = set()
        current = location
        while current is not None and current.status == LocationStatus.MERGED.value:
            if current.id in seen or current.merged_into_id is None:
                self.logger.warning(f"Location {location.id} has a broken merge chain")
                return None
            seen.add(current.id)
            current = self.db_manager.get_location(session, current.merged_into_id)
        return current

    def canonical_ids(self, location_ids: Iterable[UUID]) -> List[UUID]:
        """Map stored location ids to their live merge targets.

        Duplicates collapse, and ids that no longer exist or sit on a broken
        merge chain are dropped.
        """
        canonical: List[UUID] = []
        with self.db_manager.get_session() as session:
            for location_id in location_ids:
                row = self.db_manager.get_location(session, location_id)
                target = self._follow_merged(session, row) if row is not None else None
                if target is not None and target.id not in canonical:
                    canonical.append(target.id)
        return canonical

    def _labels(self, location_ids: Iterable[UUID]) -> Dict[UUID, str]:
        labels = {}
        with self.db_manager.get_session() as session:
            for location_id in location_ids:
                row = self.db_manager.get_location(session, location_id)
                if row is not None:
                    labels[location_id] = row.display_name or row.name
        return labels

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_location(self, location_id: UUID) -> Optional[LocationEntity]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_location(session, location_id)
            return self.db_manager.to_location_entity(row) if row is not None else None

    def list_locations(self, include_merged: bool = False) -> List[LocationEntity]:
        with self.db_manager.get_session() as session:
            return [
                self.db_manager.to_location_entity(row)
                for row in self.db_manager.get_locations(session, include_merged=include_merged)
            ]

    def add_alias(self, location_id: UUID, alias: str) -> bool:
        """Add a normalized alias if it is not already present."""
        with self.db_manager.get_session() as session:
            return self.db_manager.add_alias(session, location_id, normalize_location(alias))

    def merge_locations(self, source_id: UUID, target_id: UUID) -> LocationEntity:
        """Fold a duplicate location into another, keeping every alias it had.

        Args:
            source_id: Location to retire
            target_id: Location that absorbs it (merge chains are followed)

        Returns:
            The surviving location

        Raises:
            ValueError: If either location is missing or the merge would form a cycle
        """
        with self.db_manager.get_session() as session:
            source = self.db_manager.get_location(session, source_id)
            target = self.db_manager.get_location(session, target_id)
            if source is None or target is None:
                raise ValueError(f"Unknown location: {source_id if source is None else target_id}")
            target = self._follow_merged(session, target)
            if target is None:
                raise ValueError(f"Location {target_id} has a broken merge chain")
            if target.id == source.id:
                raise ValueError("Cannot merge a location into itself")

            for alias in [source.normalized_name] + [a.alias for a in source.aliases]:
                self.db_manager.add_alias(session, target.id, alias)
            for variation in source.seen_variations or []:
                if variation not in (target.seen_variations or []):
                    target.seen_variations = list(target.seen_variations or []) + [variation]
            target.usage_count = (target.usage_count or 0) + (source.usage_count or 0)
            self.db_manager.mark_location_merged(session, source, target)
            session.expire(target)

            self.logger.info(f"Merged location '{source.name}' into '{target.name}'")
            return self.db_manager.to_location_entity(target)
