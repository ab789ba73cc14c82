"""Consent records and their mapping from remote rows.

This module provides:
- ClientInfo, TutorInfo: Nested parts of a consent
- Consent: A consent record as held in memory and in the cache
- NewConsent: Input for creating a consent
- TransformResult, transform_row, transform_rows: Tagged row mapping
- generate_code: Human-readable consent code (TCF-XXXXX-XXXXX)
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from consentsync.core.errors import TransformError

logger = logging.getLogger(__name__)

CODE_PREFIX = "TCF"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PART_LENGTH = 5

# Columns requested from the remote table; artist name comes from a join
CONSENT_COLUMNS = (
    "id,code,client_info,tutor_info,artist_id,client_signature,"
    "tutor_signature,archived,created_at,updated_at,artists:artist_id(name)"
)


@dataclass
class ClientInfo:
    """Personal data of the client signing the consent."""

    name: str
    last_name: str = ""
    age: int = 0
    national_id: str = ""
    birth_date: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""
    data_confirmed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientInfo:
        """Create from a stored dictionary."""
        return cls(
            name=data["name"],
            last_name=data.get("last_name") or "",
            age=int(data.get("age") or 0),
            national_id=data.get("national_id") or "",
            birth_date=data.get("birth_date") or "",
            address=data.get("address") or "",
            phone=data.get("phone") or "",
            email=data.get("email") or "",
            data_confirmed=bool(data.get("data_confirmed", False)),
        )


@dataclass
class TutorInfo:
    """Legal guardian of an underage client."""

    name: str
    national_id: str = ""
    relationship: str = ""
    other_relationship: str = ""
    signature: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TutorInfo:
        """Create from a stored dictionary."""
        return cls(
            name=data["name"],
            national_id=data.get("national_id") or "",
            relationship=data.get("relationship") or "",
            other_relationship=data.get("other_relationship") or "",
            signature=data.get("signature"),
        )


@dataclass
class Consent:
    """A consent record.

    Attributes:
        id: Backend identifier.
        code: Human-readable code printed on the consent.
        created_at: Creation time (ISO 8601).
        client: Client personal data.
        tutor: Guardian data, for minors.
        health_info: Free-form health questionnaire answers.
        artist_name: Display name of the assigned artist.
        signature: Client signature (data URL).
        archived: True once moved to the archived partition.
    """

    id: str
    code: str
    created_at: str
    client: ClientInfo
    tutor: TutorInfo | None = None
    health_info: dict[str, Any] = field(default_factory=dict)
    artist_name: str = ""
    signature: str | None = None
    archived: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (cache format)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Consent:
        """Create from the cache format produced by to_dict()."""
        tutor = data.get("tutor")
        return cls(
            id=str(data["id"]),
            code=data["code"],
            created_at=data["created_at"],
            client=ClientInfo.from_dict(data["client"]),
            tutor=TutorInfo.from_dict(tutor) if tutor else None,
            health_info=dict(data.get("health_info") or {}),
            artist_name=data.get("artist_name") or "",
            signature=data.get("signature"),
            archived=bool(data.get("archived", False)),
        )

    def as_archived(self) -> Consent:
        """Return a copy marked as archived."""
        return replace(self, archived=True)


@dataclass
class NewConsent:
    """Input for creating a consent.

    The backend assigns the id; the code and creation time are assigned
    by the client when the consent is created.
    """

    client: ClientInfo
    artist_name: str
    signature: str | None = None
    tutor: TutorInfo | None = None
    health_info: dict[str, Any] = field(default_factory=dict)

    def to_insert_payload(self, code: str, artist_id: Any) -> dict[str, Any]:
        """Build the row inserted into the remote table."""
        client_info = asdict(self.client)
        client_info["health_info"] = self.health_info
        return {
            "code": code,
            "client_info": client_info,
            "tutor_info": asdict(self.tutor) if self.tutor else None,
            "artist_id": artist_id,
            "client_signature": self.signature,
            "tutor_signature": self.tutor.signature if self.tutor else None,
            "archived": False,
        }

    def to_consent(self, consent_id: str, code: str, created_at: str) -> Consent:
        """Build the local record once the backend accepted the insert."""
        return Consent(
            id=consent_id,
            code=code,
            created_at=created_at,
            client=self.client,
            tutor=self.tutor,
            health_info=dict(self.health_info),
            artist_name=self.artist_name,
            signature=self.signature,
            archived=False,
        )


@dataclass
class TransformResult:
    """Outcome of mapping one remote row: a record or an error."""

    record: Consent | None = None
    error: TransformError | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def transform_row(row: Any) -> TransformResult:
    """Map a raw remote row to a Consent.

    Never raises: a malformed row yields a result carrying TransformError.
    """
    try:
        if not isinstance(row, dict):
            raise TypeError(f"expected an object, got {type(row).__name__}")

        client_info = row["client_info"]
        if not isinstance(client_info, dict):
            raise TypeError("client_info is not an object")
        tutor_info = row.get("tutor_info")
        artist = row.get("artists")
        artist_name = artist.get("name") if isinstance(artist, dict) else None

        record = Consent(
            id=str(row["id"]),
            code=row["code"],
            created_at=row["created_at"],
            client=ClientInfo.from_dict(client_info),
            tutor=TutorInfo.from_dict(tutor_info) if tutor_info else None,
            health_info=dict(client_info.get("health_info") or {}),
            artist_name=artist_name or "",
            signature=row.get("client_signature"),
            archived=bool(row.get("archived", False)),
        )
    except (KeyError, TypeError, ValueError) as e:
        return TransformResult(
            error=TransformError(f"Cannot map consent row: {e!r}", row=row)
        )
    return TransformResult(record=record)


def transform_rows(rows: list[Any] | None) -> list[Consent]:
    """Map a batch of rows, logging and dropping malformed ones."""
    if not rows:
        return []

    records: list[Consent] = []
    for row in rows:
        result = transform_row(row)
        if result.record is not None:
            records.append(result.record)
        else:
            logger.error("Skipping consent row: %s", result.error)
    return records


def records_to_cache(records: list[Consent]) -> list[dict[str, Any]]:
    """Serialize records for the cache."""
    return [record.to_dict() for record in records]


def records_from_cache(data: Any) -> list[Consent]:
    """Deserialize cached records, dropping entries that no longer parse."""
    if not isinstance(data, list):
        return []
    records: list[Consent] = []
    for item in data:
        try:
            records.append(Consent.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping cached consent: %r", e)
    return records


def generate_code() -> str:
    """Generate a consent code like ``TCF-4K2ZQ-9XBD1``."""
    parts = [
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_PART_LENGTH))
        for _ in range(2)
    ]
    return f"{CODE_PREFIX}-{parts[0]}-{parts[1]}"
