"""cvesync — local mirror of the public CVE corpus with incremental, resumable ingestion."""

__version__ = "0.1.0"
