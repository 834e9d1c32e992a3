# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Runtime state of an orchestration run: per-service state machine values,
published status snapshots, the execution plan and the aggregate run result.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple


class ServiceState(str, Enum):
    """Lifecycle state of a supervised service."""

    PENDING = "pending"
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"
    STOPPED = "stopped"


ALLOWED_TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STARTING: frozenset(
        {ServiceState.PROBING, ServiceState.FAILED, ServiceState.STOPPED}
    ),
    ServiceState.PROBING: frozenset(
        {ServiceState.READY, ServiceState.FAILED, ServiceState.STOPPED}
    ),
    ServiceState.READY: frozenset(
        {ServiceState.DEGRADED, ServiceState.FAILED, ServiceState.STOPPED}
    ),
    ServiceState.DEGRADED: frozenset(
        {ServiceState.READY, ServiceState.FAILED, ServiceState.STARTING, ServiceState.STOPPED}
    ),
    ServiceState.FAILED: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
}


class ErrorKind(str, Enum):
    """Why a service ended up failed or blocked."""

    CONFIGURATION = "configuration"
    START = "start"
    PROBE = "probe"
    PROPAGATION = "propagation"
    DEPENDENCY = "dependency_failed"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ServiceStatus:
    """
    Immutable snapshot of one service, published by its supervisor.
    """

    service_id: str
    state: ServiceState = ServiceState.PENDING
    terminal: bool = False
    restart_count: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    outputs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    pid: Optional[int] = None
    updated_at: str = field(default_factory=_utc_now)

    @property
    def is_terminal_failure(self) -> bool:
        return self.state == ServiceState.FAILED and self.terminal

    @property
    def is_blocked(self) -> bool:
        return self.state == ServiceState.PENDING and self.error_kind is not None

    @property
    def is_alive(self) -> bool:
        return self.state in (
            ServiceState.STARTING,
            ServiceState.PROBING,
            ServiceState.READY,
            ServiceState.DEGRADED,
        ) or (self.state == ServiceState.FAILED and not self.terminal)

    def evolve(self, **changes) -> "ServiceStatus":
        """A copy with ``changes`` applied and a fresh timestamp."""
        changes.setdefault("updated_at", _utc_now())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, object]:
        return {
            "service": self.service_id,
            "state": self.state.value,
            "terminal": self.terminal,
            "restart_count": self.restart_count,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "outputs": dict(self.outputs),
            "pid": self.pid,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Ordered stages of mutually independent services.
    """

    stages: Tuple[FrozenSet[str], ...]

    def start_order(self) -> List[str]:
        """A valid topological order; members of a stage are sorted by id."""
        return [service_id for stage in self.stages for service_id in sorted(stage)]

    def shutdown_order(self) -> List[str]:
        return list(reversed(self.start_order()))

    def stage_of(self, service_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if service_id in stage:
                return index
        raise KeyError(service_id)

    def __len__(self) -> int:
        return len(self.stages)


class RunOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ServiceFailure:
    service_id: str
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class RunResult:
    """
    Aggregate outcome of an orchestration run.
    """

    outcome: RunOutcome
    failures: Tuple[ServiceFailure, ...] = ()
    blocked: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def failed_services(self) -> List[str]:
        return [failure.service_id for failure in self.failures]

    @property
    def ok(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS

    def to_dict(self) -> Dict[str, object]:
        return {
            "outcome": self.outcome.value,
            "failures": [
                {"service": f.service_id, "kind": f.kind.value, "message": f.message}
                for f in self.failures
            ],
            "blocked": list(self.blocked),
            "error": self.error,
        }
