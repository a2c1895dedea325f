"""Corpus synchronization, normalization and batch persistence."""
