"""Progress callback signatures shared by the scanner and the deployers."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ._types import DeploymentResult

logger = logging.getLogger(__name__)

# (ip, percent_complete, message)
ScanProgressCallback = Callable[[str, int, str], Any]

# (ip, index, total, result); index is 1-based
DeployProgressCallback = Callable[[str, int, int, DeploymentResult], Any]


def notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a progress callback; its failures never reach the caller."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.debug(f"Progress callback raised, ignoring: {e!r}")
