"""Cve model — one canonical vulnerability record, keyed by its CVE identifier."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cvesync.models.base import Base, TimestampMixin


class Cve(TimestampMixin, Base):
    __tablename__ = "cves"

    # Official CVE identifier (e.g. "CVE-2024-12345"), immutable
    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    assigner: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # PUBLISHED / REJECTED / RESERVED
    vuln_status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)

    published: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Primary severity metric, denormalised for filtering
    cvss_version: Mapped[str | None] = mapped_column(String(8), nullable=True)
    cvss_score: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    cvss_severity: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    cvss_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # SHA-256 of the canonical payload
    normalized_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<Cve {self.id!r} status={self.vuln_status!r}>"
