"""Pydantic schemas for records, jobs and API payloads."""
