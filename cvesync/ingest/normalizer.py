"""Normalize CVE JSON 5 advisory documents to the canonical record schema.

Pure functions apart from ``load_document``, which reads a file first.
Input layout (simplified):

    {
      "cveMetadata": {"cveId": "...", "state": "PUBLISHED", "datePublished": "...", ...},
      "containers": {
        "cna": {"descriptions": [...], "metrics": [...], "affected": [...], ...},
        "adp": [{"providerMetadata": {"shortName": "CISA-ADP"}, "metrics": [...]}]
      }
    }
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cvesync.schemas.cve import (
    AffectedEntry,
    CanonicalCve,
    Reference,
    RemediationText,
    SeverityMetric,
    VersionRange,
    WeaknessEntry,
)

NO_DESCRIPTION = "No description available"
DEFAULT_LANGUAGE = "en"

# Metric object key -> scheme version, newest first
_CVSS_KEYS: tuple[tuple[str, str], ...] = (
    ("cvssV4_0", "4.0"),
    ("cvssV3_1", "3.1"),
    ("cvssV3_0", "3.0"),
    ("cvssV2_0", "2.0"),
)

# Higher wins when choosing the primary metric
VERSION_PRIORITY: dict[str, int] = {"4.0": 4, "3.1": 3, "3.0": 2, "2.0": 1}


class MalformedDocumentError(ValueError):
    """An advisory document that cannot be turned into a canonical record."""


def _normalize_timestamp(value: Any) -> str | None:
    """Render a timestamp as UTC ISO-8601; anything unparseable becomes None."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _pick_description(descriptions: list[dict[str, Any]]) -> str:
    entries = [d for d in descriptions if isinstance(d, dict) and d.get("value")]
    for d in entries:
        lang = str(d.get("lang") or "").lower()
        if lang == "en" or lang.startswith("en-"):
            return d["value"]
    if entries:
        return entries[0]["value"]
    return NO_DESCRIPTION


def _severity_band(version: str, score: float | None) -> str | None:
    if score is None:
        return None
    if version == "2.0":
        if score < 4.0:
            return "LOW"
        return "MEDIUM" if score < 7.0 else "HIGH"
    if score == 0:
        return "NONE"
    if score < 4.0:
        return "LOW"
    if score < 7.0:
        return "MEDIUM"
    return "HIGH" if score < 9.0 else "CRITICAL"


def _collect_metrics(metric_blocks: list[Any], source: str) -> list[SeverityMetric]:
    collected: list[SeverityMetric] = []
    for block in metric_blocks:
        if not isinstance(block, dict):
            continue
        for key, version in _CVSS_KEYS:
            cvss = block.get(key)
            if not isinstance(cvss, dict):
                continue
            score = cvss.get("baseScore")
            score = float(score) if isinstance(score, (int, float)) else None
            collected.append(
                SeverityMetric(
                    version=version,
                    score=score,
                    severity=cvss.get("baseSeverity") or _severity_band(version, score),
                    vector=cvss.get("vectorString"),
                    source=source,
                )
            )
    return collected


def select_primary_metric(metrics: list[SeverityMetric]) -> SeverityMetric | None:
    """Highest scheme priority wins; equal priority keeps the first seen."""
    primary: SeverityMetric | None = None
    for metric in metrics:
        if primary is None or VERSION_PRIORITY.get(metric.version, 0) > VERSION_PRIORITY.get(
            primary.version, 0
        ):
            primary = metric
    return primary


def _collect_references(raw_refs: list[Any]) -> list[Reference]:
    refs = [
        Reference(url=r["url"], tags=[str(t) for t in (r.get("tags") or [])])
        for r in raw_refs
        if isinstance(r, dict) and r.get("url")
    ]
    return sorted(refs, key=lambda r: r.url)


def _collect_affected(raw_affected: list[Any]) -> list[AffectedEntry]:
    entries: list[AffectedEntry] = []
    for aff in raw_affected:
        if not isinstance(aff, dict) or not aff.get("product"):
            continue
        versions = [
            VersionRange(
                version=v.get("version"),
                status=v.get("status"),
                version_type=v.get("versionType"),
                less_than=v.get("lessThan"),
                less_than_or_equal=v.get("lessThanOrEqual"),
            )
            for v in (aff.get("versions") or [])
            if isinstance(v, dict)
        ]
        entries.append(
            AffectedEntry(
                vendor=aff.get("vendor"),
                product=aff["product"],
                default_status=aff.get("defaultStatus"),
                modules=[str(m) for m in (aff.get("modules") or [])],
                versions=versions,
            )
        )
    return entries


def _collect_remediations(cna: dict[str, Any]) -> list[RemediationText]:
    texts: list[RemediationText] = []
    for field, kind in (("workarounds", "workaround"), ("solutions", "solution")):
        for entry in cna.get(field) or []:
            if not isinstance(entry, dict) or not entry.get("value"):
                continue
            texts.append(
                RemediationText(
                    kind=kind,
                    text=entry["value"],
                    language=entry.get("lang") or DEFAULT_LANGUAGE,
                )
            )
    return texts


def _collect_weaknesses(problem_types: list[Any]) -> list[WeaknessEntry]:
    seen: set[str] = set()
    weaknesses: list[WeaknessEntry] = []
    for pt in problem_types:
        if not isinstance(pt, dict):
            continue
        for desc in pt.get("descriptions") or []:
            cwe_id = desc.get("cweId") if isinstance(desc, dict) else None
            if not cwe_id or cwe_id in seen:
                continue
            seen.add(cwe_id)
            weaknesses.append(WeaknessEntry(cwe_id=cwe_id, description=desc.get("description")))
    return weaknesses


def normalize_document(raw: Any) -> CanonicalCve:
    """Parse one CVE JSON 5 document into a ``CanonicalCve``.

    Raises MalformedDocumentError when the document has no usable identifier
    or its structure cannot be coerced.
    """
    if not isinstance(raw, dict):
        raise MalformedDocumentError("document is not a JSON object")

    meta = raw.get("cveMetadata") or {}
    cve_id = meta.get("cveId") if isinstance(meta, dict) else None
    if not isinstance(cve_id, str) or not cve_id.strip():
        raise MalformedDocumentError("missing cveMetadata.cveId")
    cve_id = cve_id.strip().upper()

    try:
        return _build_record(cve_id, meta, raw.get("containers") or {})
    except MalformedDocumentError:
        raise
    except (ValidationError, AttributeError, TypeError, ValueError) as exc:
        raise MalformedDocumentError(f"{cve_id}: {exc}") from exc


def _build_record(cve_id: str, meta: dict[str, Any], containers: dict[str, Any]) -> CanonicalCve:
    cna = containers.get("cna") or {}
    if not isinstance(cna, dict):
        raise MalformedDocumentError(f"{cve_id}: containers.cna is not an object")

    metrics = _collect_metrics(cna.get("metrics") or [], "cna")
    for adp in containers.get("adp") or []:
        if not isinstance(adp, dict):
            continue
        short_name = (adp.get("providerMetadata") or {}).get("shortName") or "adp"
        metrics.extend(_collect_metrics(adp.get("metrics") or [], short_name))
    primary = select_primary_metric(metrics)

    references = _collect_references(cna.get("references") or [])

    return CanonicalCve(
        id=cve_id,
        title=cna.get("title"),
        description=_pick_description(cna.get("descriptions") or []),
        assigner=meta.get("assignerShortName"),
        vuln_status=meta.get("state"),
        published=_normalize_timestamp(meta.get("datePublished")),
        last_modified=_normalize_timestamp(meta.get("dateUpdated")),
        cvss_version=primary.version if primary else None,
        cvss_score=primary.score if primary else None,
        cvss_severity=primary.severity if primary else None,
        cvss_vector=primary.vector if primary else None,
        metrics=metrics,
        references=references,
        reference_urls=[r.url for r in references],
        affected=_collect_affected(cna.get("affected") or []),
        remediations=_collect_remediations(cna),
        weaknesses=_collect_weaknesses(cna.get("problemTypes") or []),
    )


def load_document(path: Path) -> CanonicalCve:
    """Read and normalize one advisory file (blocking; run it off the event loop)."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedDocumentError(f"{path.name}: {exc}") from exc
    return normalize_document(raw)
