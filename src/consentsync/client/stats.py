"""Dashboard statistics over consent records."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from consentsync.client.records import Consent

logger = logging.getLogger(__name__)

ADULT_AGE = 18


@dataclass
class ConsentStatistics:
    """Aggregated figures for a set of consents.

    Attributes:
        total: Number of consents.
        minors: Consents whose client is under 18.
        adults: Remaining consents.
        per_day: (YYYY-MM-DD, count), oldest first.
        per_month: (YYYY-MM, count), oldest first.
        per_artist: (artist name, count), busiest first.
    """

    total: int = 0
    minors: int = 0
    adults: int = 0
    per_day: list[tuple[str, int]] = field(default_factory=list)
    per_month: list[tuple[str, int]] = field(default_factory=list)
    per_artist: list[tuple[str, int]] = field(default_factory=list)


def _parse_created_at(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable creation date: %r", value)
        return None


def compute_statistics(records: list[Consent]) -> ConsentStatistics:
    """Compute dashboard statistics for ``records``."""
    total = len(records)
    minors = sum(1 for record in records if record.client.age < ADULT_AGE)

    days: Counter[str] = Counter()
    months: Counter[str] = Counter()
    artists: Counter[str] = Counter()

    for record in records:
        created = _parse_created_at(record.created_at)
        if created is not None:
            days[created.strftime("%Y-%m-%d")] += 1
            months[created.strftime("%Y-%m")] += 1
        if record.artist_name:
            artists[record.artist_name] += 1

    return ConsentStatistics(
        total=total,
        minors=minors,
        adults=total - minors,
        per_day=sorted(days.items()),
        per_month=sorted(months.items()),
        per_artist=sorted(artists.items(), key=lambda item: (-item[1], item[0])),
    )
