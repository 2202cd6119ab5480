"""Data classes for family tree records.

Field names match the SQLite column names so rows map straight onto them.
``to_dict`` produces the camelCase shape used by the API.
"""

from dataclasses import asdict, dataclass, fields
import sqlite3
from typing import Any

from pydantic.alias_generators import to_camel


class Record:
    """Shared row conversion helpers."""

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]):
        names = {f.name for f in fields(cls)}
        values = {k: row[k] for k in row.keys() if k in names}
        for f in fields(cls):
            # SQLite hands booleans back as 0/1
            if f.type is bool and values.get(f.name) is not None:
                values[f.name] = bool(values[f.name])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {to_camel(k): v for k, v in asdict(self).items()}


@dataclass
class Individual(Record):
    id: int
    first_name: str
    last_name: str
    middle_name: str | None = None
    photo_url: str | None = None
    birth_date: str | None = None  # ISO format YYYY-MM-DD or None
    death_date: str | None = None
    birth_place: str | None = None
    death_place: str | None = None
    is_living: bool = True
    gender: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    notes: str | None = None
    privacy_level: int = 1  # 1=public, 2=family, 3=private
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["fullName"] = self.full_name
        return data


@dataclass
class ParentChildEdge(Record):
    id: int
    parent_id: int
    child_id: int
    relationship_type: str = "biological"  # biological, adopted, step, foster
    is_primary: bool = True
    notes: str | None = None
    created_at: str | None = None


@dataclass
class Marriage(Record):
    id: int
    spouse1_id: int
    spouse2_id: int
    marriage_date: str | None = None
    marriage_place: str | None = None
    divorce_date: str | None = None
    divorce_place: str | None = None
    is_active: bool = True
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Event(Record):
    id: int
    individual_id: int
    event_type: str
    event_date: str | None = None
    event_place: str | None = None
    description: str | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Source(Record):
    id: int
    title: str
    author: str | None = None
    publication: str | None = None
    publication_date: str | None = None
    url: str | None = None
    notes: str | None = None
    source_type: str = "document"  # document, photo, video, audio, website
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Media(Record):
    id: int
    title: str
    file_url: str
    file_type: str  # image, video, audio, document
    individual_id: int | None = None
    description: str | None = None
    file_size: int | None = None
    upload_date: str | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Citation(Record):
    individual_id: int
    source_id: int
    citation: str | None = None
    page_number: str | None = None
    notes: str | None = None
    created_at: str | None = None


@dataclass
class MediaLink(Record):
    individual_id: int
    media_id: int
    relationship: str = "subject"  # subject, related, mentioned
    notes: str | None = None
    created_at: str | None = None
