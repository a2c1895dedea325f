"""Background job lifecycle and the job log hub."""
