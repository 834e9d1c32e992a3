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
Models for declaring services: launch parameters, dependencies, configuration
templates, published outputs, health checks and restart policies.
"""
import re
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SERVICE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"

# Names config file templates see besides the dependency ids
RESERVED_SERVICE_IDS = frozenset({"outputs", "config", "service"})


class DependencyCondition(str, Enum):
    """
    What a dependent needs from a dependency before it may start.
    """
    HEALTHY = "service_healthy"
    STARTED = "service_started"


class RestartCondition(str, Enum):
    """
    Conditions under which a failed service is restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Restart behaviour with capped exponential backoff and jitter.

    The n-th restart waits ``backoff_base * backoff_multiplier ** (n - 1)``
    seconds plus up to ``jitter`` seconds, never more than ``backoff_cap``.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartCondition = RestartCondition.ON_FAILURE
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_cap: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=1.0, ge=0)

    @property
    def allows_restart(self) -> bool:
        return self.condition != RestartCondition.NO and self.max_retries > 0


class HealthCheck(BaseModel):
    """
    Readiness and liveness probe for a service.

    ``test`` follows the Compose convention (``["CMD", ...]``,
    ``["CMD-SHELL", "..."]`` or ``["NONE"]``). ``tcp_port`` is a container
    port that must accept connections. When both are set both must pass.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str] = Field(default_factory=list)
    tcp_port: Optional[int] = None
    interval: float = Field(default=5.0, gt=0)
    timeout: float = Field(default=5.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    start_period: float = Field(default=60.0, ge=0)


class StartSpec(BaseModel):
    """
    Opaque launch parameters for the service process.
    """
    model_config = ConfigDict(frozen=True)

    command: List[str] = Field(default_factory=list)
    entrypoint: List[str] = Field(default_factory=list)
    working_dir: Optional[str] = None
    env_files: List[str] = Field(default_factory=list)
    ports: Dict[int, Optional[int]] = Field(default_factory=dict)  # {container: host}
    cpu_limit: Optional[float] = None
    memory_limit: Optional[str] = None
    start_timeout: float = Field(default=30.0, gt=0)
    stop_grace_period: float = Field(default=10.0, ge=0)

    @property
    def full_command(self) -> List[str]:
        """
        The entrypoint is the executable when set and the command becomes its
        arguments, otherwise the command is run as is.
        """
        return list(self.entrypoint) + list(self.command)


class OutputRef(BaseModel):
    """
    Reference to an output published by a dependency, written ``service.key``.
    """
    model_config = ConfigDict(frozen=True)

    ref: str

    @field_validator("ref")
    @classmethod
    def _check_ref(cls, value: str) -> str:
        service_id, _, key = value.rpartition(".")
        if not service_id or not key:
            raise ValueError(f"output reference '{value}' must look like 'service.key'")
        if not re.match(SERVICE_ID_PATTERN, service_id):
            raise ValueError(f"output reference '{value}' names an invalid service id")
        return value

    @property
    def service_id(self) -> str:
        return self.ref.rpartition(".")[0]

    @property
    def key(self) -> str:
        return self.ref.rpartition(".")[2]


ConfigValue = Union[OutputRef, str]


class ServiceDescriptor(BaseModel):
    """
    Immutable definition of one orchestrated service.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(pattern=SERVICE_ID_PATTERN)
    dependencies: Dict[str, DependencyCondition] = Field(default_factory=dict)
    start: StartSpec = Field(default_factory=StartSpec)

    # Rendered into the process environment; refs resolved from dependencies
    config: Dict[str, ConfigValue] = Field(default_factory=dict)
    config_files: Dict[str, str] = Field(default_factory=dict)

    # ${VAR} templates over the runtime facts of this service
    outputs: Dict[str, str] = Field(default_factory=dict)

    health_check: Optional[HealthCheck] = None
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _check_reserved_id(cls, value: str) -> str:
        if value in RESERVED_SERVICE_IDS:
            raise ValueError(f"'{value}' is reserved for config file templates")
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value):
        if value is None:
            return {}
        if isinstance(value, (list, tuple, set, frozenset)):
            return {dep: DependencyCondition.HEALTHY for dep in value}
        return value

    @field_validator("config", mode="before")
    @classmethod
    def _coerce_literals(cls, value):
        if not isinstance(value, dict):
            return value
        coerced = {}
        for key, item in value.items():
            if isinstance(item, bool):
                coerced[key] = "true" if item else "false"
            elif isinstance(item, (int, float)):
                coerced[key] = str(item)
            elif item is None:
                coerced[key] = ""
            else:
                coerced[key] = item
        return coerced

    @model_validator(mode="after")
    def _check_self_dependency(self):
        if self.id in self.dependencies:
            raise ValueError(f"service '{self.id}' cannot depend on itself")
        return self

    def references(self) -> Dict[str, OutputRef]:
        """
        Config keys whose values come from dependency outputs.
        """
        return {k: v for k, v in self.config.items() if isinstance(v, OutputRef)}
