"""
Deployment profile model.

A profile is the named bundle of hostname, per-adapter network settings and
SMB share settings that the deployer pushes to a server. Profiles come from
an external store; this module only defines and validates their shape.
Malformed values raise pydantic.ValidationError at construction.
"""

import ipaddress
import re
from enum import Enum
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Physical adapter slots on a disguise server
MAX_ADAPTER_SLOTS = 6

# NetBIOS computer name rules
_HOSTNAME_RE = re.compile(r'^[A-Za-z0-9-]{1,15}$')


def subnet_mask_to_prefix(mask: str) -> int:
    """
    Convert a dotted subnet mask to a CIDR prefix length.

    The prefix is the count of leading 1-bits; masks whose 1-bits are not
    contiguous are rejected.
    """
    bits = format(int(ipaddress.IPv4Address(mask.strip())), '032b')
    prefix = len(bits) - len(bits.lstrip('1'))
    if '1' in bits[prefix:]:
        raise ValueError(f'Subnet mask is not contiguous: {mask}')
    return prefix


class SharePermission(str, Enum):
    """Access level granted to Everyone on the project share."""
    FULL = "Full"
    CHANGE = "Change"
    READ = "Read"


class NetworkAdapterSettings(BaseModel):
    """Settings for one adapter slot."""

    model_config = ConfigDict(frozen=True)

    role: str = Field(default="", description="Adapter role, e.g. d3Net, Media, NDI")
    adapter_name: str = Field(default="", description="Windows adapter name to match")
    ip_address: str = ""
    subnet_mask: str = "255.255.255.0"
    gateway: str = ""
    dns1: str = ""
    dns2: str = ""
    dhcp: bool = False
    enabled: bool = False

    @field_validator('ip_address', 'gateway', 'dns1', 'dns2')
    @classmethod
    def validate_ipv4(cls, v):
        v = v.strip()
        if v:
            ipaddress.IPv4Address(v)
        return v

    @field_validator('subnet_mask')
    @classmethod
    def validate_subnet_mask(cls, v):
        v = v.strip()
        if v:
            subnet_mask_to_prefix(v)
        return v

    @model_validator(mode='after')
    def validate_static_mask(self):
        if self.ip_address and not self.dhcp and not self.subnet_mask:
            raise ValueError('subnet_mask is required for a static address')
        return self

    @property
    def prefix_length(self) -> int:
        return subnet_mask_to_prefix(self.subnet_mask)

    @property
    def dns_servers(self) -> List[str]:
        return [d for d in (self.dns1, self.dns2) if d]

    @property
    def configurable(self) -> bool:
        """Slot is enabled and carries an address to apply."""
        return self.enabled and bool(self.ip_address)


class SMBSettings(BaseModel):
    """Project share settings."""

    model_config = ConfigDict(frozen=True)

    share_name: str = "d3 Projects"
    projects_path: str = r"D:\d3 Projects"
    share_permissions: SharePermission = SharePermission.FULL
    share_d3_projects: bool = False

    @model_validator(mode='after')
    def validate_enabled_share(self):
        if self.share_d3_projects and not (self.share_name.strip() and self.projects_path.strip()):
            raise ValueError('share_name and projects_path are required when sharing is enabled')
        return self


class Profile(BaseModel):
    """A deployment profile."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    server_name: str = Field(default="", description="Empty leaves the hostname unchanged")
    network_adapters: List[NetworkAdapterSettings] = Field(default_factory=list)
    smb_settings: SMBSettings = Field(default_factory=SMBSettings)

    @field_validator('server_name')
    @classmethod
    def validate_server_name(cls, v):
        v = v.strip()
        if v and (not _HOSTNAME_RE.match(v) or v.isdigit()):
            raise ValueError(f'Invalid computer name: {v!r}')
        return v

    @field_validator('network_adapters')
    @classmethod
    def validate_adapter_slots(cls, v):
        if len(v) > MAX_ADAPTER_SLOTS:
            raise ValueError(f'At most {MAX_ADAPTER_SLOTS} adapter slots are supported, got {len(v)}')
        return v

    def configurable_adapters(self) -> List[Tuple[int, NetworkAdapterSettings]]:
        """Slots (index, settings) the adapter phase will apply."""
        return [(i, a) for i, a in enumerate(self.network_adapters) if a.configurable]
