"""
Relevance scoring for knowledge search.

score = text_weight * text_match
      + recency_weight(mode) * decay(age)
      + access_weight * frequency(access_count)

- text_match is 1.0 for a full-text hit and a lower constant for a substring hit
- decay() depends on the temporal mode (exponential / linear half-lives)
- frequency() grows with log10(access_count) and saturates at 1.0
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import settings
from .errors import ValidationError
from .records import Kind, Record, ScoredRecord, ensure_utc

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

# field:value tokens pulled out of free text
FILTER_TOKEN = re.compile(r"^([A-Za-z_]+):(\S+)$")

FILTER_FIELDS = {
    "type": "kinds",
    "kind": "kinds",
    "tag": "tags",
    "tags": "tags",
    "status": "statuses",
    "priority": "priorities",
    "session": "session_id",
    "archived": "include_archived",
}


class DecayType(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    GAUSSIAN = "gaussian"


@dataclass(frozen=True)
class TemporalDecay:
    """Maps an age in days to a weight in [0, 1]."""

    half_life_days: float = 30.0
    type: DecayType = DecayType.EXPONENTIAL

    def calculate(self, age_days: float) -> float:
        if age_days < 0:
            # Future timestamps get no penalty
            return 1.0
        if self.type is DecayType.EXPONENTIAL:
            return math.pow(0.5, age_days / self.half_life_days)
        if self.type is DecayType.LINEAR:
            return max(0.1, 1.0 - age_days / (self.half_life_days * 2))
        return math.exp(-math.pow(age_days / (self.half_life_days * 0.5), 2))

    def describe(self) -> str:
        return f"{self.type.value} decay (half-life: {self.half_life_days:.0f} days)"


class TemporalScoringMode(str, Enum):
    NONE = "none"
    DEFAULT = "default"
    AGGRESSIVE = "aggressive"
    GENTLE = "gentle"

    @classmethod
    def parse(cls, value) -> "TemporalScoringMode":
        if isinstance(value, TemporalScoringMode):
            return value
        if value is None or value == "":
            return cls.DEFAULT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid temporal scoring mode '{value}'. Use: none, default, aggressive, gentle",
                operation="search", key=str(value)
            )


DECAY_FUNCTIONS = {
    TemporalScoringMode.DEFAULT: TemporalDecay(30.0, DecayType.EXPONENTIAL),
    TemporalScoringMode.AGGRESSIVE: TemporalDecay(7.0, DecayType.EXPONENTIAL),
    TemporalScoringMode.GENTLE: TemporalDecay(90.0, DecayType.LINEAR),
}


def recency_weight(mode: TemporalScoringMode) -> float:
    if mode is TemporalScoringMode.AGGRESSIVE:
        return settings.recency_weight_aggressive
    if mode is TemporalScoringMode.GENTLE:
        return settings.recency_weight_gentle
    if mode is TemporalScoringMode.NONE:
        return 0.0
    return settings.recency_weight_default


def frequency(access_count: int) -> float:
    """0 for never-read records, 1.0 from ~100 reads upward."""
    if access_count <= 0:
        return 0.0
    return min(1.0, math.log10(access_count + 1) / 2.0)


@dataclass
class ParsedQuery:
    text: str = ""
    filters: Dict[str, object] = field(default_factory=dict)


def parse_query(query: Optional[str]) -> ParsedQuery:
    """
    Split ``field:value`` tokens out of a free-text query.

    ``type:Checklist status:open login`` becomes text "login" with kind and
    status filters. Tokens naming an unknown field are dropped.
    """
    parsed = ParsedQuery()
    if not query:
        return parsed

    words = []
    for token in query.split():
        match = FILTER_TOKEN.match(token)
        if not match or match.group(2).startswith("//"):
            words.append(token)
            continue

        name, value = match.group(1).lower(), match.group(2)
        target = FILTER_FIELDS.get(name)
        if target is None:
            logger.debug(f"Ignoring unknown filter field '{name}' in query")
            continue

        if target == "kinds":
            parsed.filters.setdefault("kinds", []).append(Kind.parse(value))
        elif target == "session_id":
            parsed.filters["session_id"] = value
        elif target == "include_archived":
            parsed.filters["include_archived"] = value.lower() in ("true", "yes", "1")
        else:
            parsed.filters.setdefault(target, []).append(value)

    parsed.text = " ".join(words)
    return parsed


def _reference_time(record: Record) -> Optional[datetime]:
    if settings.recency_field == "modified" and record.modified_at:
        return ensure_utc(record.modified_at)
    return ensure_utc(record.created_at)


def score_record(
    record: Record,
    text_match: float,
    mode: TemporalScoringMode,
    now: Optional[datetime] = None,
    boost_frequent: bool = False,
) -> ScoredRecord:
    """Combine text match, recency and access frequency into one score."""
    now = now or datetime.now(timezone.utc)

    recency = 0.0
    weight = recency_weight(mode)
    if weight > 0:
        reference = _reference_time(record)
        age_days = (now - reference).total_seconds() / SECONDS_PER_DAY if reference else 0.0
        recency = DECAY_FUNCTIONS[mode].calculate(age_days)

    freq = frequency(record.access_count) if boost_frequent else 0.0

    score = settings.text_match_weight * text_match + weight * recency
    if mode is not TemporalScoringMode.NONE:
        score += settings.access_weight * freq

    return ScoredRecord(record=record, score=score, text_score=text_match, recency=recency, frequency=freq)


def created_key(scored: ScoredRecord) -> Tuple[float, str]:
    created = ensure_utc(scored.record.created_at)
    return (created.timestamp() if created else 0.0, scored.record.id)


def rank(scored: List[ScoredRecord]) -> List[ScoredRecord]:
    """Highest score first; ties go to the newest record."""
    return sorted(scored, key=lambda s: (s.score, *created_key(s)), reverse=True)
