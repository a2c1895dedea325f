"""Local working copy of the upstream advisory corpus.

The corpus is a git repository (cvelistV5 layout: ``cves/<year>/<bucket>/CVE-*.json``).
``CorpusSyncManager.prepare`` clones or pulls it and decides whether the
ingestion run has to walk the whole tree (FULL) or only the files touched
between two revisions (INCREMENTAL).
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from cvesync.core.logging import get_logger

if TYPE_CHECKING:
    from cvesync.jobs.events import JobLogger

logger = get_logger(__name__)

DOCUMENTS_DIR = "cves"
# Aggregate files that live next to the advisories but are not advisories
_EXCLUDED_SUFFIXES = ("delta.json", "deltaLog.json")


class GitCommandError(RuntimeError):
    """A git subprocess could not be started, exited non-zero or timed out."""


class CorpusUnavailableError(RuntimeError):
    """The working copy cannot be created or read."""


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class SyncPlan:
    mode: SyncMode
    old_revision: str | None
    new_revision: str
    no_changes: bool = False


def is_advisory_path(relative: str) -> bool:
    """True for ``cves/**.json`` advisory documents, excluding delta aggregates."""
    relative = relative.replace("\\", "/")
    return (
        relative.startswith(f"{DOCUMENTS_DIR}/")
        and relative.endswith(".json")
        and not relative.endswith(_EXCLUDED_SUFFIXES)
    )


class CorpusSyncManager:
    """Drives the external git client against one working copy."""

    def __init__(
        self,
        repo_dir: Path,
        repo_url: str,
        *,
        git_binary: str = "git",
        clone_timeout: float = 600,
        pull_timeout: float = 300,
        command_timeout: float = 60,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.repo_url = repo_url
        self.git_binary = git_binary
        self.clone_timeout = clone_timeout
        self.pull_timeout = pull_timeout
        self.command_timeout = command_timeout

    @property
    def exists(self) -> bool:
        return (self.repo_dir / ".git").exists()

    @property
    def documents_dir(self) -> Path:
        return self.repo_dir / DOCUMENTS_DIR

    # ── git plumbing ─────────────────────────────────────────────────────────

    async def _git(self, *args: str, cwd: Path | None = None, timeout: float | None = None) -> str:
        """Run ``git <args>`` and return its stripped stdout."""
        timeout = timeout if timeout is not None else self.command_timeout
        command = " ".join(args)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary, *args,
                cwd=str(cwd or self.repo_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitCommandError(f"git {command}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise GitCommandError(f"git {command} timed out after {timeout:g}s") from None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            raise GitCommandError(f"git {command} exited with code {proc.returncode}: {err}")
        return stdout.decode("utf-8", errors="replace").strip()

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def head(self) -> str:
        return await self._git("rev-parse", "HEAD")

    # ── Sync decision ────────────────────────────────────────────────────────

    async def prepare(
        self,
        record_count: int,
        stored_revision: str | None,
        log: JobLogger,
    ) -> SyncPlan:
        """Make the working copy current and pick the ingestion mode.

        Args:
            record_count: Records currently in the store; 0 always forces FULL.
            stored_revision: Revision recorded by the last successful run, if any.
            log: Job logger receiving progress and warnings.

        Raises:
            CorpusUnavailableError: the clone failed or HEAD cannot be read.
        """
        if not self.exists:
            return await self._clone(log)

        try:
            old_head = await self.head()
        except GitCommandError as exc:
            raise CorpusUnavailableError(f"Cannot read working copy at {self.repo_dir}: {exc}") from exc

        await log.info("Pulling updates from corpus repository")
        try:
            await self._git("pull", "--ff-only", timeout=self.pull_timeout)
        except GitCommandError as exc:
            # Non-fatal: proceed with the local copy
            await log.warning("Git pull failed, using local data", error=str(exc))

        try:
            new_head = await self.head()
        except GitCommandError as exc:
            raise CorpusUnavailableError(f"Cannot read working copy at {self.repo_dir}: {exc}") from exc

        if record_count == 0:
            await log.info("Store is empty, forcing full scan", revision=new_head[:8])
            return SyncPlan(SyncMode.FULL, old_head, new_head)

        if old_head == new_head:
            if stored_revision and stored_revision != new_head:
                await log.info(
                    "Resuming from last completed revision",
                    from_revision=stored_revision[:8],
                    to_revision=new_head[:8],
                )
                return SyncPlan(SyncMode.INCREMENTAL, stored_revision, new_head)
            await log.info("No upstream changes and store is current", records=record_count)
            return SyncPlan(SyncMode.INCREMENTAL, old_head, new_head, no_changes=True)

        base = stored_revision or old_head
        await log.info("Incremental update", from_revision=base[:8], to_revision=new_head[:8])
        return SyncPlan(SyncMode.INCREMENTAL, base, new_head)

    async def _clone(self, log: JobLogger) -> SyncPlan:
        await log.info(
            "Cloning corpus repository (this may take several minutes)",
            url=self.repo_url,
        )
        try:
            self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
            await self._git(
                "clone", "--depth", "1", self.repo_url, str(self.repo_dir),
                cwd=self.repo_dir.parent,
                timeout=self.clone_timeout,
            )
            head = await self.head()
        except (GitCommandError, OSError) as exc:
            raise CorpusUnavailableError(f"Could not clone {self.repo_url}: {exc}") from exc
        await log.info("Repository cloned", revision=head[:8])
        return SyncPlan(SyncMode.FULL, None, head)

    # ── File selection ───────────────────────────────────────────────────────

    async def changed_files(
        self, old_revision: str, new_revision: str, log: JobLogger
    ) -> list[Path] | None:
        """Advisory documents touched between two revisions.

        Returns None when the diff cannot be computed (pruned or shallow
        history), which tells the caller to fall back to a full walk.
        Deleted files are dropped.
        """
        try:
            output = await self._git("diff", "--name-only", old_revision, new_revision)
        except GitCommandError as exc:
            await log.warning("Failed to calculate diff, falling back to full scan", error=str(exc))
            return None

        files = [
            self.repo_dir / line
            for line in sorted({name.strip() for name in output.splitlines()})
            if is_advisory_path(line)
        ]
        files = [f for f in files if f.is_file()]
        await log.info("Found changed files", count=len(files))
        return files

    def iter_documents(self) -> Iterator[Path]:
        """Yield every advisory document under ``cves/`` in sorted path order."""
        root = self.documents_dir
        if not root.is_dir():
            logger.warning("Corpus has no documents directory", path=str(root))
            return
        yield from self._walk(root)

    def _walk(self, directory: Path) -> Iterator[Path]:
        for entry in sorted(directory.iterdir()):
            if entry.is_dir():
                yield from self._walk(entry)
            elif entry.suffix == ".json" and not entry.name.endswith(_EXCLUDED_SUFFIXES):
                yield entry
