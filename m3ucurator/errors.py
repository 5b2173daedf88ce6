"""
Exception hierarchy shared by parsers, synthesizer and exporter.
"""

from __future__ import annotations

from typing import Optional


class M3UCuratorError(Exception):
    """Base class for all errors raised by m3ucurator."""


class IngestionError(M3UCuratorError):
    """Raised when a single upstream fetch fails (status, payload shape, missing fields)."""


class ParseError(M3UCuratorError):
    """Raised for a malformed playlist line or a misuse of a parse session."""


class ConfigError(M3UCuratorError):
    """Raised when a job configuration file is invalid."""


class FatalError(M3UCuratorError):
    """Raised before any filesystem mutation when the desired input cannot be used."""


class ReconciliationError(M3UCuratorError):
    """
    Per-entry filesystem failure during an export run.

    The message always carries the entry display name and the underlying cause.
    """

    def __init__(self, display_name: str, action: str, cause: Optional[BaseException] = None):
        self.display_name = display_name
        self.action = action
        self.cause = cause
        detail = str(cause) if cause is not None else "unknown error"
        super().__init__(f"{action} failed for {display_name!r}: {detail}")
