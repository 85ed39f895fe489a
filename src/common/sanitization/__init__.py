"""Sanitization utilities."""

from .text import redact_bound_args, redact_log_data, redact_sensitive_info

__all__ = ["redact_bound_args", "redact_log_data", "redact_sensitive_info"]
