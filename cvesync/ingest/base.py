"""Base ingestor contract — every job kind the controller can run implements this."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from cvesync.jobs.controller import JobContext


@dataclass
class IngestorMetadata:
    name: str               # Job kind slug (e.g. "cvelist")
    display_name: str       # Human-readable name
    version: str
    description: str


class BaseIngestor(ABC):
    """Abstract base class for ingestion runs.

    Subclass this, set the ``metadata`` class variable, and implement ``run``.
    Instances are handed to ``JobController`` keyed by ``metadata.name``.
    """

    metadata: ClassVar[IngestorMetadata]

    @abstractmethod
    async def run(self, ctx: JobContext) -> dict[str, Any]:
        """Execute one ingestion run.

        Args:
            ctx: Progress, heartbeat, cancellation and logging handle of the job.

        Returns:
            A summary dict stored on the completed job, e.g.::

                {
                    "mode": "full" | "incremental",
                    "from_revision": str | None,
                    "revision": str,
                    "files": int,
                    "skipped": int,
                    "items_processed": int,
                    "items_added": int,
                    "items_updated": int,
                    "items_unchanged": int,
                }

        Raises:
            JobCancelled: when cancellation is observed at a batch boundary.
        """
        ...

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        # Concrete subclasses must declare metadata
        if not getattr(cls.run, "__isabstractmethod__", False):
            if not hasattr(cls, "metadata"):
                raise TypeError(
                    f"Ingestor {cls.__name__} must define a 'metadata' class variable."
                )
