"""
Plain data records shared between the gateways, the scheduler and the UI.

Everything here is immutable so results produced on worker threads can be
handed to the main loop without copying.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

STABLE_INSTANCE_STATES = ("running", "stopped", "terminated")


class ProfileKind(str, Enum):
    STATIC = "static"
    SSO = "sso"


@dataclass(frozen=True)
class Profile:
    name: str
    kind: ProfileKind = ProfileKind.STATIC
    expires_at: Optional[datetime] = None
    is_active: bool = False

    def with_active(self, active: bool) -> "Profile":
        return replace(self, is_active=active)


@dataclass(frozen=True)
class Instance:
    id: str
    name: str
    instance_type: str = "unknown"
    state: str = "unknown"
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    launch_time: Optional[datetime] = None

    @property
    def is_stable(self) -> bool:
        return self.state in STABLE_INSTANCE_STATES


@dataclass(frozen=True)
class Function:
    name: str
    runtime: str = "N/A"
    memory: int = 0
    last_modified: str = "N/A"
    description: str = ""


@dataclass(frozen=True)
class ResourceSnapshot:
    """Last fetched resources. Replaced wholesale, never edited in place."""

    instances: Tuple[Instance, ...] = ()
    functions: Tuple[Function, ...] = ()
    fetched_at: Optional[datetime] = None
    profile: Optional[str] = None

    def instance(self, instance_id: str) -> Optional[Instance]:
        for instance in self.instances:
            if instance.id == instance_id:
                return instance
        return None

    def display_name(self, instance_id: str) -> str:
        instance = self.instance(instance_id)
        return instance.name if instance else instance_id

    @property
    def all_stable(self) -> bool:
        return all(i.is_stable for i in self.instances)


@dataclass(frozen=True)
class LoginOutput:
    """Captured result of an external login flow."""

    profile: str
    exit_code: int
    output: str = field(default="", repr=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
