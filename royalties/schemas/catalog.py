"""
Catalog snapshot entries.
Frozen models: a loaded snapshot is never edited in place, only replaced.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator

from royalties.matching.normalize import normalize_name, normalize_title


class CachedWriter(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str = ""
    last_name: str
    full_name: str = ""
    normalized_name: str = ""
    share: Decimal = Decimal("0")
    right_shares: dict[str, Decimal] = {}   # performance / mechanical / sync -> share
    is_controlled: bool = False

    @model_validator(mode="before")
    @classmethod
    def _derive_names(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("full_name"):
                parts = (data.get("first_name") or "", data.get("last_name") or "")
                data["full_name"] = " ".join(p for p in parts if p)
            if not data.get("normalized_name"):
                data["normalized_name"] = normalize_name(data["full_name"])
        return data


class CachedPublisher(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    code: str = ""
    name: str = ""
    share: Decimal = Decimal("0")
    right_shares: dict[str, Decimal] = {}


class CachedRecording(BaseModel):
    model_config = ConfigDict(frozen=True)

    isrc: Optional[str] = None
    title: Optional[str] = None


class CatalogWork(BaseModel):
    """One work as seen by the matcher and the distribution calculator."""

    model_config = ConfigDict(frozen=True)

    id: str
    work_code: str
    title: str
    normalized_title: str = ""
    iswc: Optional[str] = None
    alternate_titles: tuple[str, ...] = ()
    normalized_alternate_titles: tuple[str, ...] = ()
    writers: tuple[CachedWriter, ...] = ()
    publishers: tuple[CachedPublisher, ...] = ()
    recordings: tuple[CachedRecording, ...] = ()
    embedding: Optional[tuple[float, ...]] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_normalized(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("normalized_title"):
                data["normalized_title"] = normalize_title(data.get("title") or "")
            alternates = tuple(data.get("alternate_titles") or ())
            if alternates and not data.get("normalized_alternate_titles"):
                data["normalized_alternate_titles"] = tuple(
                    t for t in (normalize_title(a) for a in alternates) if t
                )
        return data

    @property
    def writer_names(self) -> list[str]:
        return [w.full_name for w in self.writers]
