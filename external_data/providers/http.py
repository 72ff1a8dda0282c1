"""
external_data/providers/http.py
Shared GET-with-retry used by every provider.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30   # seconds
MAX_RETRIES     = 3
RETRY_DELAY     = 2.0  # seconds, multiplied by the attempt number


def get_json(
    url: str,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
) -> dict | list:
    """GET *url* and decode JSON, retrying on network / HTTP errors with linear back-off."""
    for attempt in range(retries):
        try:
            resp = requests.get(
                url,
                params=params,
                headers=headers or {"Accept": "application/json"},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            if attempt == retries - 1:
                raise
            logger.warning("Request to %s failed (attempt %d/%d): %s", url, attempt + 1, retries, e)
            time.sleep(retry_delay * (attempt + 1))
    raise RuntimeError("Unreachable")
