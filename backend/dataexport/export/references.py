"""
Reference resolver: per-export location hierarchy and translation dictionary.

Both caches belong to a single export run. They are filled up front where the
needed keys are known and then incrementally while rows are written; nothing
is shared between runs.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from dataexport.core.database import QUERY_CHUNK, chunked
from dataexport.models.language_token import LanguageToken
from dataexport.models.location import Location

logger = logging.getLogger(__name__)

# UI strings every export may render
TOKEN_ID = "LNG_COMMON_MODEL_FIELD_LABEL_ID"
TOKEN_ANSWER_VALUE = "LNG_PAGE_IMPORT_DATA_LABEL_QUESTIONNAIRE_ANSWERS_VALUE"
TOKEN_ANSWER_DATE = "LNG_PAGE_IMPORT_DATA_LABEL_QUESTIONNAIRE_ANSWERS_DATE"
TOKEN_LOCATION_ID = "LNG_LOCATION_FIELD_LABEL_ID"
TOKEN_LOCATION_IDENTIFIERS = "LNG_LOCATION_FIELD_LABEL_IDENTIFIERS"
TOKEN_LOCATION_IDENTIFIER = "LNG_LOCATION_FIELD_LABEL_IDENTIFIER"
TOKEN_GEOGRAPHICAL_LEVEL = "LNG_OUTBREAK_FIELD_LABEL_LOCATION_GEOGRAPHICAL_LEVEL"
TOKEN_PARENT_LOCATION = "LNG_LOCATION_FIELD_LABEL_PARENT_LOCATION"

FIXED_TOKENS = (
    TOKEN_ID,
    TOKEN_ANSWER_VALUE,
    TOKEN_ANSWER_DATE,
    TOKEN_LOCATION_ID,
    TOKEN_LOCATION_IDENTIFIERS,
    TOKEN_LOCATION_IDENTIFIER,
    TOKEN_GEOGRAPHICAL_LEVEL,
    TOKEN_PARENT_LOCATION,
)

TOKEN_PREFIX = "LNG_"


def is_token(value) -> bool:
    return isinstance(value, str) and value.startswith(TOKEN_PREFIX)


class Dictionary:
    """
    Token -> translation map for one export.

    Each token is looked up at most once: first in the requested language,
    then the leftovers in the default language. Tokens with no translation in
    either language stay untranslated and are not retried.
    """

    def __init__(self, session: Session, language_id: str, default_language: str):
        self.session = session
        self.language_id = language_id
        self.default_language = default_language
        self.lookups = 0
        self._translations: Dict[str, str] = {}
        self._attempted: Set[str] = set()

    def prefetch(self, tokens: Iterable[str]) -> int:
        return self.resolve_missing(tokens)

    def missing(self, tokens: Iterable[str]) -> Set[str]:
        return {token for token in tokens if token and token not in self._attempted}

    def resolve_missing(self, tokens: Iterable[str]) -> int:
        """Load translations for tokens never looked up before; returns how many were found."""
        pending = self.missing(tokens)
        if not pending:
            return 0

        self._attempted.update(pending)
        found = self._load(self.language_id, pending)
        leftovers = pending - found.keys()
        if leftovers and self.default_language != self.language_id:
            fallback = self._load(self.default_language, leftovers)
            if fallback:
                logger.debug(
                    f"{len(fallback)} token(s) missing in {self.language_id}, "
                    f"using {self.default_language}"
                )
            found.update(fallback)

        self._translations.update(found)
        return len(found)

    def _load(self, language_id: str, tokens: Set[str]) -> Dict[str, str]:
        found = {}
        for chunk in chunked(sorted(tokens)):
            self.lookups += 1
            rows = (
                self.session.query(LanguageToken.token, LanguageToken.translation)
                .filter(LanguageToken.language_id == language_id)
                .filter(LanguageToken.token.in_(chunk))
                .all()
            )
            found.update({token: translation for token, translation in rows})
        return found

    def get(self, token: str) -> Optional[str]:
        return self._translations.get(token)

    def translate(self, token):
        """Translation if one is cached, otherwise the token itself."""
        if not isinstance(token, str):
            return token
        return self._translations.get(token, token)

    def __contains__(self, token: str) -> bool:
        return token in self._translations

    def __len__(self) -> int:
        return len(self._translations)


@dataclass
class CachedLocation:
    id: str
    name: str
    identifiers: List[dict] = field(default_factory=list)
    parent_location_id: Optional[str] = None
    geographical_level_id: Optional[str] = None
    # Root -> self, only filled for locations that have a parent
    parent_chain: List[str] = field(default_factory=list)
    parent_chain_levels: List[str] = field(default_factory=list)
    parent_chain_names: List[str] = field(default_factory=list)

    @property
    def identifier_codes(self) -> List[str]:
        return [identifier.get("code") for identifier in self.identifiers]


class LocationCache:
    """
    Locations referenced by one export, with their parents resolved transitively.

    Ids are fetched in bounded batches, capped at QUERY_CHUNK ids per query.
    Every fetched location schedules its parent until nothing is left
    unresolved; there is no depth cap.
    """

    def __init__(self, session: Session, batch_size: int = 1000, include_parents: bool = True):
        self.session = session
        self.batch_size = min(batch_size, QUERY_CHUNK)
        self.include_parents = include_parents
        self.fetch_count = 0
        self.max_identifiers = 0
        self.max_parent_chain = 0
        self.unresolved: Set[str] = set()
        self._locations: Dict[str, CachedLocation] = {}

    def resolve(self, location_ids: Iterable[str]) -> None:
        queue: List[str] = []
        scheduled: Set[str] = set()
        for location_id in location_ids:
            if self._needs_fetch(location_id) and location_id not in scheduled:
                scheduled.add(location_id)
                queue.append(location_id)

        while queue:
            batch, queue = queue[:self.batch_size], queue[self.batch_size:]
            self.fetch_count += 1
            rows = self.session.query(Location).filter(Location.id.in_(batch)).all()

            for row in rows:
                location = CachedLocation(
                    id=row.id,
                    name=row.name,
                    identifiers=list(row.identifiers or []),
                    parent_location_id=row.parent_location_id,
                    geographical_level_id=row.geographical_level_id,
                )
                self._locations[row.id] = location
                self.max_identifiers = max(self.max_identifiers, len(location.identifiers))

                parent_id = location.parent_location_id
                if (
                    self.include_parents
                    and parent_id
                    and self._needs_fetch(parent_id)
                    and parent_id not in scheduled
                ):
                    scheduled.add(parent_id)
                    queue.append(parent_id)

            missing = set(batch) - {row.id for row in rows}
            if missing:
                logger.warning(f"{len(missing)} referenced location(s) not found")
                self.unresolved.update(missing)

    def finalize(self) -> None:
        """Build parent chains and the widest chain seen."""
        for location in self._locations.values():
            location.parent_chain = []
            location.parent_chain_levels = []
            location.parent_chain_names = []

            if location.parent_location_id:
                current_id: Optional[str] = location.id
                seen: Set[str] = set()
                while current_id and current_id not in seen:
                    seen.add(current_id)
                    current = self._locations.get(current_id)
                    location.parent_chain.insert(0, current_id)
                    location.parent_chain_levels.insert(
                        0, current.geographical_level_id if current else "-"
                    )
                    location.parent_chain_names.insert(0, current.name if current else "-")
                    current_id = current.parent_location_id if current else None

            self.max_parent_chain = max(self.max_parent_chain, len(location.parent_chain))

    def get(self, location_id) -> Optional[CachedLocation]:
        if not isinstance(location_id, str):
            return None
        return self._locations.get(location_id)

    def name(self, location_id) -> Optional[str]:
        location = self.get(location_id)
        return location.name if location else None

    def geographical_levels(self) -> Set[str]:
        return {
            location.geographical_level_id
            for location in self._locations.values()
            if location.geographical_level_id
        }

    def _needs_fetch(self, location_id) -> bool:
        return (
            bool(location_id)
            and location_id not in self._locations
            and location_id not in self.unresolved
        )

    def __contains__(self, location_id: str) -> bool:
        return location_id in self._locations

    def __len__(self) -> int:
        return len(self._locations)
