"""
Data models for storage layer.

Durable records behind flag evaluation: flag definitions, tenant
overrides and kill switches.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class KillSwitchScope(Enum):
    """Scope sentinel for the kill switch that covers every flag."""
    GLOBAL = "GLOBAL"


@dataclass(frozen=True)
class FlagDefinition:
    """A feature flag and its static default."""
    key: str
    description: str
    default_enabled: bool
    owner: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate the flag key."""
        if not self.key or not self.key.strip():
            raise ValueError("flag key is required and cannot be empty")


@dataclass(frozen=True)
class TenantOverride:
    """Per-tenant value that supersedes a flag's default."""
    tenant_id: str
    flag_key: str
    enabled: bool
    updated_at: datetime
    updated_by: str


@dataclass(frozen=True)
class EmergencyOverride:
    """Kill switch record.

    `enabled` True means the switch is engaged and the scope is forced off.
    `flag_key` None means GLOBAL scope.
    """
    flag_key: Optional[str]
    enabled: bool
    reason: str
    activated_at: datetime
    activated_by: str

    @property
    def scope(self) -> str:
        return self.flag_key if self.flag_key is not None else KillSwitchScope.GLOBAL.value

    @property
    def is_global(self) -> bool:
        return self.flag_key is None
