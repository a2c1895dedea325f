"""CveChange model — append-only field-level history of a Cve."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from cvesync.models.base import Base, SerialPrimaryKeyMixin


class CveChange(SerialPrimaryKeyMixin, Base):
    __tablename__ = "cve_changes"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    change_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # {field: {"from": ..., "to": ...}}
    diff: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<CveChange {self.cve_id!r} fields={sorted(self.diff or {})}>"
