"""LocoPosition model: one reported position of a locomotive."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from loco_tracker.models.base import Base


class LocoPosition(Base):
    """A position report for a locomotive at an upstream-reported time.

    Rows are keyed by (loco_no, observed_at): re-fetching the same report
    updates the row in place. Rows older than the retention window are
    removed by the storage layer (see storage.reaper).
    """

    __tablename__ = "loco_positions"
    __table_args__ = (
        UniqueConstraint("loco_no", "observed_at", name="uq_loco_positions_loco_observed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    loco_no: Mapped[int] = mapped_column(Integer, index=True)
    train_no: Mapped[int | None] = mapped_column(Integer, index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    station: Mapped[str] = mapped_column(String(512), default="N/A")
    event: Mapped[str] = mapped_column(String(512), default="N/A")
    speed: Mapped[int] = mapped_column(Integer, default=0)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # True when the upstream timestamp was missing and capture time was used
    timestamp_estimated: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<LocoPosition(loco_no={self.loco_no}, train_no={self.train_no}, "
            f"lat={self.latitude}, lon={self.longitude}, observed_at={self.observed_at})>"
        )
