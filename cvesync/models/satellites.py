"""Satellite rows attached to a Cve.

Every table here is keyed by ``cve_id`` and is always replaced wholesale
(delete-then-insert) when the parent record changes, never patched.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cvesync.models.base import Base, SerialPrimaryKeyMixin


class Metric(SerialPrimaryKeyMixin, Base):
    __tablename__ = "metrics"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # "4.0" / "3.1" / "3.0" / "2.0"
    cvss_version: Mapped[str] = mapped_column(String(8), nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    vector_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "cna" or the short name of the ADP container that supplied it
    source: Mapped[str] = mapped_column(String(100), nullable=False, default="cna")

    def __repr__(self) -> str:
        return f"<Metric {self.cve_id!r} v{self.cvss_version} score={self.score}>"


class CveReference(SerialPrimaryKeyMixin, Base):
    __tablename__ = "cve_references"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class AffectedProduct(SerialPrimaryKeyMixin, Base):
    __tablename__ = "cve_products"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    product: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    default_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    modules: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # Ordered version ranges, see schemas.cve.VersionRange
    versions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<AffectedProduct {self.cve_id!r} {self.vendor}/{self.product}>"


class Remediation(SerialPrimaryKeyMixin, Base):
    __tablename__ = "cve_remediations"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # "workaround" | "solution"
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="en")


class Weakness(SerialPrimaryKeyMixin, Base):
    __tablename__ = "cve_cwes"

    cve_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    cwe_id: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
