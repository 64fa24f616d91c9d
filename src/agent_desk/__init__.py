"""Durable AI job queue and approval-gated workflow engine."""

__version__ = "0.1.0"
