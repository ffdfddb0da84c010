"""
Shared HTTP session for source probes.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ..constants import APP_USER_AGENT
from .logger import get_logger

logger = get_logger(__name__)

# Upstream metadata documents are small; anything bigger is not what we asked for
MAX_RESPONSE_SIZE = 10 * 1024 * 1024


class ResponseTooLarge(ValueError):
    """Raised when an upstream response exceeds MAX_RESPONSE_SIZE."""


def create_session() -> requests.Session:
    """
    Create a requests session configured for upstream version lookups.

    Retries are disabled: a failed probe is reported once and the run moves
    on to the next target.

    Returns:
        Configured session
    """
    session = requests.Session()
    session.verify = True
    session.headers.update({
        'Accept': 'application/json',
        'Accept-Encoding': 'gzip, deflate',
        'User-Agent': APP_USER_AGENT,
    })

    adapter = HTTPAdapter(
        max_retries=0,
        pool_connections=4,
        pool_maxsize=8,
        pool_block=False,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.max_redirects = 5

    logger.debug("Configured HTTP session for source probes")
    return session


def check_response_size(response: requests.Response) -> None:
    """
    Reject responses that announce a body larger than MAX_RESPONSE_SIZE.

    Raises:
        ResponseTooLarge: If the Content-Length header exceeds the limit
    """
    content_length = response.headers.get('content-length')
    if not content_length:
        return
    try:
        size = int(content_length)
    except ValueError:
        return
    if size > MAX_RESPONSE_SIZE:
        response.close()
        raise ResponseTooLarge(f"Response too large: {size} bytes (max: {MAX_RESPONSE_SIZE})")


def get_json(session: requests.Session, url: str, timeout: float,
             headers: Optional[Dict[str, str]] = None,
             params: Optional[Dict[str, Any]] = None) -> requests.Response:
    """
    Issue a GET request for a JSON document.

    The response is returned unparsed so callers can inspect status codes
    and rate-limit headers before decoding.

    Raises:
        requests.RequestException: On transport failure
        ResponseTooLarge: If the body is larger than allowed
    """
    response = session.get(url, timeout=timeout, headers=headers, params=params)
    check_response_size(response)
    return response
