"""
Adapter slot resolution and per-adapter outcomes.

A profile lists up to six adapter slots by role. Each slot is matched to a
physical adapter on the server by exact name first, then by a role pattern
against the adapter name and description, and only as a last resort by its
position in the list. A physical adapter is claimed by at most one slot.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from .profile import NetworkAdapterSettings

logger = logging.getLogger(__name__)


# Substrings (lowercase) identifying the adapter that serves each role
ROLE_DESCRIPTION_PATTERNS: dict[str, tuple[str, ...]] = {
    "d3net": ("d3net", "d3 net"),
    "media": ("media", "mellanox", "connectx", "25g", "100g"),
    "ndi": ("ndi",),
    "control": ("control", "i210", "i219"),
    "internet": ("internet", "wan"),
    "lighting": ("lighting", "artnet", "sacn"),
    "management": ("management", "mgmt", "ipmi", "bmc"),
}


class MatchMethod(str, Enum):
    """How a slot found its physical adapter."""
    NAME = "name"
    ROLE = "role"
    POSITION = "position"


class AdapterOutcome(str, Enum):
    """Outcome of configuring one adapter slot."""
    OK = "ok"
    WARN = "warn"
    ERROR = "error"


@dataclass(frozen=True)
class PhysicalAdapter:
    """A network adapter reported by Get-NetAdapter on the server."""
    name: str
    description: str = ""
    interface_index: int = 0
    status: str = ""
    mac_address: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhysicalAdapter":
        return cls(
            name=str(data.get("Name") or ""),
            description=str(data.get("InterfaceDescription") or ""),
            interface_index=int(data.get("InterfaceIndex") or 0),
            status=str(data.get("Status") or ""),
            mac_address=str(data.get("MacAddress") or ""),
        )


@dataclass(frozen=True)
class AdapterReport:
    """What happened to one slot during the adapter phase."""
    slot: int
    role: str
    outcome: AdapterOutcome
    message: str
    adapter_name: Optional[str] = None

    def line(self) -> str:
        label = self.role or f"slot {self.slot + 1}"
        target = f" -> {self.adapter_name}" if self.adapter_name else ""
        return f"[{self.outcome.value.upper()}] {label}{target}: {self.message}"


def parse_adapter_listing(parsed: Any) -> list[PhysicalAdapter]:
    """Convert LIST_ADAPTERS_SCRIPT output into PhysicalAdapter objects."""
    if parsed is None:
        return []
    # ConvertTo-Json emits a bare object for single-element arrays on older hosts
    if isinstance(parsed, dict):
        parsed = [parsed]
    adapters = []
    for item in parsed:
        if isinstance(item, dict) and item.get("Name"):
            adapters.append(PhysicalAdapter.from_dict(item))
    return adapters


def _normalize(text: str) -> str:
    return re.sub(r"[^a-z0-9 ]", "", text.lower())


def role_patterns(role: str) -> tuple[str, ...]:
    """Patterns for a role; unknown roles match on their own name."""
    key = _normalize(role).replace(" ", "")
    if not key:
        return ()
    return ROLE_DESCRIPTION_PATTERNS.get(key, (key,))


def resolve_adapter(
    slot: int,
    settings: NetworkAdapterSettings,
    adapters: list[PhysicalAdapter],
    claimed: set[int],
) -> Optional[tuple[PhysicalAdapter, MatchMethod]]:
    """
    Find the physical adapter for a slot.

    Args:
        slot: Zero-based slot index in the profile
        settings: Slot settings
        adapters: Adapters on the server, in ifIndex order
        claimed: Interface indexes already taken by earlier slots

    Returns:
        (adapter, method) or None when nothing is left to match
    """
    free = [a for a in adapters if a.interface_index not in claimed]

    wanted = settings.adapter_name.strip().lower()
    if wanted:
        for adapter in free:
            if adapter.name.lower() == wanted:
                return adapter, MatchMethod.NAME

    patterns = role_patterns(settings.role)
    if patterns:
        for adapter in free:
            haystack = _normalize(f"{adapter.name} {adapter.description}")
            if any(p in haystack for p in patterns):
                return adapter, MatchMethod.ROLE

    if slot < len(adapters) and adapters[slot].interface_index not in claimed:
        return adapters[slot], MatchMethod.POSITION

    return None


def phase_succeeded(outcomes: Iterable[AdapterOutcome]) -> bool:
    """
    Reduce per-slot outcomes to the phase result.

    The phase succeeds iff no slot ended in ERROR. An empty or
    warnings-only set of outcomes therefore succeeds.
    """
    return all(outcome != AdapterOutcome.ERROR for outcome in outcomes)
