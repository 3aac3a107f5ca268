"""Shared helpers."""

from .logging import get_log_path, redact_secret, setup_logging

__all__ = ["setup_logging", "get_log_path", "redact_secret"]
