"""
m3ucurator - curate upstream channel catalogs into playlists and STRM libraries.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.4.0"
