"""
Adapter registry for ingestion.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, List, Mapping

from ..models import CanonicalChannelEntry


class BaseAdapter:
    """
    Base class for all ingestion adapters.

    ``config`` is one ``sources`` item of a job file.
    """

    name = "base"

    def ingest(self, config: Mapping[str, Any]) -> List[CanonicalChannelEntry]:  # pragma: no cover - abstract
        raise NotImplementedError


_REGISTRY: Dict[str, BaseAdapter] = {}
_BOOTSTRAPPED = False


def register(adapter: BaseAdapter) -> None:
    _REGISTRY[adapter.name] = adapter


def get_adapter(name: str) -> BaseAdapter:
    global _BOOTSTRAPPED
    if not _BOOTSTRAPPED:
        _bootstrap()
        _BOOTSTRAPPED = True
    adapter = _REGISTRY.get(name)
    if not adapter:
        raise KeyError(f"adapter {name} not registered")
    return adapter


def list_adapters() -> List[str]:
    if not _BOOTSTRAPPED:
        _bootstrap()
    return sorted(_REGISTRY.keys())


def _bootstrap() -> None:
    # Import modules to trigger registration side effects.
    package = __name__
    for module in ("m3u", "xtream"):
        import_module(f"{package}.{module}")
