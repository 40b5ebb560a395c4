"""
disguise server classification from REST evidence.

The d3 service answers GET /api/service/system with a JSON document that
carries a version field. Hosts whose body is not JSON are still accepted when
it mentions disguise or d3.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from ._types import DiscoveryRecord, UNKNOWN_VERSION

if TYPE_CHECKING:
    from .probe import HostProber

logger = logging.getLogger(__name__)

VERSION_FIELDS = ("version", "apiversion", "d3version", "softwareversion")
MARKER_FIELDS = ("d3", "disguise", "machinename", "servername")
NESTED_FIELDS = ("result", "data", "system")

# "d3" only as a standalone word, so d3.js asset names do not count
_KEYWORD_RE = re.compile(r"disguise|(?<![\w./-])d3(?=\s|$)", re.IGNORECASE)


@dataclass(frozen=True)
class Classification:
    """Verdict on one HTTP response."""
    is_disguise_server: bool
    api_version: Optional[str] = None


NOT_DISGUISE = Classification(is_disguise_server=False)


def _lower_keys(obj: dict) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in obj.items()}


def _scan_object(obj: dict) -> Optional[Classification]:
    fields = _lower_keys(obj)

    for name in VERSION_FIELDS:
        value = fields.get(name)
        if value not in (None, ""):
            return Classification(is_disguise_server=True, api_version=str(value))

    if any(name in fields for name in MARKER_FIELDS):
        return Classification(is_disguise_server=True, api_version=UNKNOWN_VERSION)

    return None


def classify_response(body: str) -> Classification:
    """
    Decide whether an /api/service/system body came from a disguise server.

    Args:
        body: Response text

    Returns:
        Classification with the captured version, "Unknown" when the service
        is recognised but reports no version
    """
    try:
        document = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        document = None

    if isinstance(document, dict):
        found = _scan_object(document)
        if found:
            return found
        for name, value in _lower_keys(document).items():
            if name in NESTED_FIELDS and isinstance(value, dict):
                found = _scan_object(value)
                if found:
                    return found
        return NOT_DISGUISE

    if body and _KEYWORD_RE.search(body):
        return Classification(is_disguise_server=True, api_version=UNKNOWN_VERSION)

    return NOT_DISGUISE


async def fetch_classification(
    prober: "HostProber",
    ip: str,
    timeout_s: float,
) -> Optional[Classification]:
    """
    GET the system endpoint of ip and classify it.

    Returns None when the request fails or the status is not 2xx.
    """
    url = prober.url_for(ip, prober.system_api_path)
    try:
        status, body = await prober.http_get(url, timeout_s)
    except Exception as e:
        logger.debug(f"HTTP probe of {url} failed: {e!r}")
        return None

    if not 200 <= status < 300:
        logger.debug(f"HTTP probe of {url} returned {status}")
        return None

    return classify_response(body)


async def deep_check(
    records: list[DiscoveryRecord],
    prober: "HostProber",
    timeout_s: float = 5.0,
) -> int:
    """
    Second classification pass over ambiguous hosts.

    Every record with port 80 open but no verdict yet gets one more HTTP GET
    with a longer deadline, one host at a time. Records are upgraded in place.

    Returns:
        Number of records upgraded
    """
    upgraded = 0
    for record in records:
        if not record.http_open or record.is_disguise_server:
            continue

        verdict = await fetch_classification(prober, record.ip_address, timeout_s)
        if verdict and verdict.is_disguise_server:
            record.is_disguise_server = True
            record.api_version = verdict.api_version
            upgraded += 1
            logger.info(f"Deep check identified disguise server at {record.ip_address} ({verdict.api_version})")

    return upgraded
