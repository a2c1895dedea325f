"""Schemas for vulnerability records — the canonical, storage-ready shape."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SeverityMetric(BaseModel):
    version: str = Field(..., description="CVSS scheme version, e.g. '3.1'")
    score: float | None = None
    severity: str | None = Field(None, description="Qualitative band, e.g. 'HIGH'")
    vector: str | None = None
    source: str = Field("cna", description="'cna' or the ADP container short name")


class Reference(BaseModel):
    url: str
    tags: list[str] = Field(default_factory=list)


class VersionRange(BaseModel):
    version: str | None = None
    status: str | None = None
    version_type: str | None = None
    less_than: str | None = None
    less_than_or_equal: str | None = None


class AffectedEntry(BaseModel):
    vendor: str | None = None
    product: str
    default_status: str | None = None
    modules: list[str] = Field(default_factory=list)
    versions: list[VersionRange] = Field(default_factory=list)


class RemediationText(BaseModel):
    kind: Literal["workaround", "solution"]
    text: str
    language: str = "en"


class WeaknessEntry(BaseModel):
    cwe_id: str
    description: str | None = None


class CanonicalCve(BaseModel):
    """One advisory document after normalization.

    ``to_payload()`` is what gets hashed and stored; every field is always
    present (absent values are ``None`` or empty lists, never omitted).
    """

    id: str
    title: str | None = None
    description: str
    assigner: str | None = None
    vuln_status: str | None = None
    published: str | None = None
    last_modified: str | None = None

    # Primary severity metric
    cvss_version: str | None = None
    cvss_score: float | None = None
    cvss_severity: str | None = None
    cvss_vector: str | None = None

    metrics: list[SeverityMetric] = Field(default_factory=list)
    references: list[Reference] = Field(default_factory=list)
    reference_urls: list[str] = Field(default_factory=list)
    affected: list[AffectedEntry] = Field(default_factory=list)
    remediations: list[RemediationText] = Field(default_factory=list)
    weaknesses: list[WeaknessEntry] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ── Query-layer output ───────────────────────────────────────────────────────


class ChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_date: datetime
    diff: dict[str, Any]


class CveDetail(BaseModel):
    """A stored record with its satellites, as served to the query layer."""

    id: str
    title: str | None
    description: str
    assigner: str | None
    vuln_status: str | None
    published: datetime | None
    last_modified: datetime | None
    cvss_version: str | None
    cvss_score: float | None
    cvss_severity: str | None
    cvss_vector: str | None
    normalized_hash: str
    metrics: list[SeverityMetric]
    references: list[Reference]
    reference_urls: list[str]
    affected: list[AffectedEntry]
    remediations: list[RemediationText]
    weaknesses: list[WeaknessEntry]
    change_history: list[ChangeOut] = []
