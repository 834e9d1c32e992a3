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
Models for overall orchestration configuration.
"""
import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .service_descriptor import ServiceDescriptor

ENV_PREFIX = "STACKUP_"


class FailureMode(str, Enum):
    """
    What the controller does when a service fails during startup.
    """
    ABORT = "abort"  # stop forward progress and shut everything down
    CONTINUE = "continue"  # keep starting branches that do not depend on it


class OrchestratorSettings(BaseModel):
    """
    Tunables for one orchestration run.
    """
    model_config = ConfigDict(frozen=True)

    project_name: str = "stackup"
    state_dir: str = ".stackup"
    failure_mode: FailureMode = FailureMode.ABORT
    max_parallel_starts: int = Field(default=0, ge=0)  # 0 means unbounded
    liveness_interval: float = Field(default=5.0, gt=0)
    write_status_file: bool = True
    host: str = "127.0.0.1"

    @classmethod
    def from_sources(cls,
                     manifest_block: Optional[Mapping[str, Any]] = None,
                     environ: Optional[Mapping[str, str]] = None,
                     **overrides: Any) -> "OrchestratorSettings":
        """
        Builds settings from the manifest's ``x-stackup`` block, then
        ``STACKUP_*`` environment variables, then explicit overrides.

        :param manifest_block: Settings declared in the manifest.
        :param environ: Environment to read, defaults to ``os.environ``.
        :param overrides: Values that win over every other source; ``None`` is ignored.
        :return: The merged settings.
        """
        values: Dict[str, Any] = {}
        for key, value in (manifest_block or {}).items():
            values[key.replace("-", "_")] = value

        environ = os.environ if environ is None else environ
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.state_dir, "logs")

    @property
    def status_path(self) -> str:
        return os.path.join(self.state_dir, "status.json")


class OrchestrationConfig(BaseModel):
    """
    Complete declaration of a multi-service stack.
    Equivalent to a parsed manifest file.
    """
    services: Dict[str, ServiceDescriptor]
    settings: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    @model_validator(mode="before")
    @classmethod
    def _index_service_list(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("services"), list):
            indexed = {}
            for item in data["services"]:
                service_id = item.id if isinstance(item, ServiceDescriptor) else item.get("id")
                if service_id in indexed:
                    raise ValueError(f"duplicate service id '{service_id}'")
                indexed[service_id] = item
            data = {**data, "services": indexed}
        return data

    @model_validator(mode="after")
    def _check_keys(self):
        for key, descriptor in self.services.items():
            if key != descriptor.id:
                raise ValueError(f"service key '{key}' does not match descriptor id '{descriptor.id}'")
        return self

    @classmethod
    def from_descriptors(cls,
                         descriptors: List[ServiceDescriptor],
                         settings: Optional[OrchestratorSettings] = None) -> "OrchestrationConfig":
        return cls(services=list(descriptors), settings=settings or OrchestratorSettings())
