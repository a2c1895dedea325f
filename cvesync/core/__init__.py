"""Configuration, logging, storage access and shared utilities."""
