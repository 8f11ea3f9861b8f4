from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from points.types import PointRecord, Provenance

CategoryName = Literal["public", "restaurant", "cafe", "gas-station", "mall", "other"]


class ApiNewToilet(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    category: CategoryName = "public"
    title: str | None = Field(default=None, max_length=120)
    note: str | None = Field(default=None, max_length=500)

    def to_record(self) -> PointRecord:
        # The store assigns the id.
        return PointRecord(
            id="",
            lat=self.lat,
            lng=self.lng,
            category=self.category,
            title=(self.title or "").strip() or None,
            note=(self.note or "").strip() or None,
            provenance=Provenance.user,
        )


class ApiInvalidate(BaseModel):
    """
    Point-scoped invalidation when both coordinates are given, full clear otherwise.
    """

    lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    lng: float | None = Field(default=None, ge=-180.0, le=180.0)
