"""
Shared HTTP plumbing for upstream fetches.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import requests

from . import __version__
from .errors import IngestionError

log = logging.getLogger(__name__)

HTTP_TIMEOUT = 30
GLOBAL_REQUEST_SEMAPHORE = threading.BoundedSemaphore(16)
USER_AGENT = f"m3ucurator/{__version__}"

_HTTP_SESSION: Optional[requests.Session] = None


def get_http_session() -> requests.Session:
    global _HTTP_SESSION
    if _HTTP_SESSION is None:
        session = requests.Session()
        session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Accept": "application/json, application/x-mpegurl, text/plain, */*",
                "Accept-Encoding": "gzip, deflate",
                "Connection": "keep-alive",
            }
        )
        _HTTP_SESSION = session
    return _HTTP_SESSION


def http_get(
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    session: Optional[requests.Session] = None,
    timeout: float = HTTP_TIMEOUT,
) -> requests.Response:
    """
    GET ``url`` and return the response, raising :class:`IngestionError` on
    transport failures and non-2xx status codes.
    """

    session = session or get_http_session()
    try:
        with GLOBAL_REQUEST_SEMAPHORE:
            response = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise IngestionError(f"request to {_redact(url)} failed: {exc}") from exc
    if response.status_code >= 400:
        status = response.status_code
        response.close()
        raise IngestionError(f"request to {_redact(url)} failed with HTTP {status}")
    return response


def _redact(url: str) -> str:
    # Xtream credentials travel in the query string; keep them out of logs.
    return url.split("?", 1)[0]
