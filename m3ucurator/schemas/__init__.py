"""
Bundled JSON schemas for override maps, Xtream payloads and job files.
"""

from __future__ import annotations

__all__ = ["load_schema", "load_validator"]

import json
from functools import lru_cache
from importlib import resources
from typing import Any, Dict

from jsonschema import Draft7Validator


def load_schema(name: str) -> Dict[str, Any]:
    with resources.files(__name__).joinpath(name).open("r", encoding="utf-8") as fh:
        return json.load(fh)


@lru_cache(maxsize=None)
def load_validator(name: str) -> Draft7Validator:
    """
    Compiled validator for a bundled schema, checked against draft-07 once.
    """

    schema = load_schema(name)
    Draft7Validator.check_schema(schema)
    return Draft7Validator(schema)
