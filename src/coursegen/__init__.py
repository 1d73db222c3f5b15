"""Resumable generation pipeline for educational content."""

__version__ = "0.1.0"
