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
Shared fixtures: an in-memory runtime and descriptor factories with fast timings.
"""
from typing import Dict, List, Optional, Tuple

import pytest

from stackup.errors import StartError
from stackup.MANAGERS.config_propagator import RenderedConfig
from stackup.MODELS.orchestration_config import OrchestratorSettings
from stackup.MODELS.service_descriptor import (
    HealthCheck,
    RestartPolicy,
    ServiceDescriptor,
    StartSpec,
)
from stackup.RUNNERS.probes import ProbeResult
from stackup.RUNNERS.runtime import ServiceHandle, ServiceRuntime


class FakeRuntime(ServiceRuntime):
    """
    Scripted runtime. Probe results are consumed in order per service and the
    last one repeats; services without a script are always healthy.
    """

    def __init__(self):
        self.probes: Dict[str, List[bool]] = {}
        self.launch_failures: Dict[str, int] = {}  # -1 fails every launch
        self.exit_codes: Dict[str, Optional[int]] = {}
        self.events: List[Tuple[str, str]] = []
        self.environments: Dict[str, Dict[str, str]] = {}
        self.files: Dict[str, Dict[str, str]] = {}
        self.next_pid = 1000

    def launched(self, service_id: str) -> int:
        return self.events.count(("launch", service_id))

    def terminated(self) -> List[str]:
        return [sid for event, sid in self.events if event == "terminate"]

    async def launch(self, descriptor: ServiceDescriptor, config: RenderedConfig) -> ServiceHandle:
        self.events.append(("launch", descriptor.id))
        remaining = self.launch_failures.get(descriptor.id, 0)
        if remaining:
            if remaining > 0:
                self.launch_failures[descriptor.id] = remaining - 1
            raise StartError(f"cannot launch {descriptor.id}")
        self.environments[descriptor.id] = dict(config.environment)
        self.files[descriptor.id] = dict(config.files)
        self.exit_codes.pop(descriptor.id, None)
        self.next_pid += 1
        return ServiceHandle(
            service_id=descriptor.id,
            pid=self.next_pid,
            ports={port: host or port for port, host in descriptor.start.ports.items()},
            environment=dict(config.environment),
        )

    async def probe(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> ProbeResult:
        script = self.probes.get(descriptor.id)
        if not script:
            return ProbeResult(success=True)
        healthy = script.pop(0) if len(script) > 1 else script[0]
        return ProbeResult(success=healthy, error="" if healthy else "probe failed")

    def exit_code(self, handle: ServiceHandle) -> Optional[int]:
        return self.exit_codes.get(handle.service_id)

    async def terminate(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> None:
        self.events.append(("terminate", descriptor.id))

    def output_context(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> Dict[str, str]:
        context = {"HOST": "127.0.0.1", "SERVICE_ID": descriptor.id}
        for index, port in enumerate(sorted(handle.ports)):
            if index == 0:
                context["PORT"] = str(handle.ports[port])
            context[f"PORT_{port}"] = str(handle.ports[port])
        return context


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def settings():
    return OrchestratorSettings(write_status_file=False, liveness_interval=0.01)


@pytest.fixture
def make_service():
    """
    Factory for descriptors that probe every 10ms and restart without delay.
    """
    def factory(service_id, depends_on=(), max_retries=2, health=True, **fields):
        fields.setdefault("start", StartSpec(command=["run", service_id]))
        if health:
            fields.setdefault("health_check", HealthCheck(
                interval=0.01, timeout=1, failure_threshold=2, start_period=5,
            ))
        fields.setdefault("restart_policy", RestartPolicy(
            max_retries=max_retries, backoff_base=0, jitter=0,
        ))
        if not isinstance(depends_on, dict):
            depends_on = list(depends_on)
        return ServiceDescriptor(id=service_id, dependencies=depends_on, **fields)
    return factory


@pytest.fixture
def runtime_factory():
    return FakeRuntime
