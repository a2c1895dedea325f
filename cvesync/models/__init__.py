"""SQLAlchemy ORM models."""

from cvesync.models.base import Base
from cvesync.models.change import CveChange
from cvesync.models.cve import Cve
from cvesync.models.job import JobLog, JobRun
from cvesync.models.satellites import AffectedProduct, CveReference, Metric, Remediation, Weakness
from cvesync.models.sync_metadata import SyncMetadata

__all__ = [
    "Base", "AffectedProduct", "Cve", "CveChange", "CveReference", "JobLog",
    "JobRun", "Metric", "Remediation", "SyncMetadata", "Weakness",
]
