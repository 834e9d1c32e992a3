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
The boundary between the orchestrator and the processes it runs.

A runtime knows how to launch a service, probe it, observe its exit and stop
it. The supervisor only talks to this interface, so tests and alternative
backends can replace the process implementation.
"""
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..errors import StartError
from ..MANAGERS.config_propagator import RenderedConfig
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.network_manager import NetworkManager
from ..MODELS.orchestration_config import OrchestratorSettings
from ..MODELS.service_descriptor import ServiceDescriptor
from .probes import HealthProber, ProbeResult
from .process_runner import ProcessRunner

logger = logging.getLogger(__name__)


@dataclass
class ServiceHandle:
    """A launched instance of a service."""

    service_id: str
    pid: Optional[int] = None
    ports: Dict[int, int] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    config_dir: Optional[str] = None
    runner: Optional[ProcessRunner] = None


class ServiceRuntime(ABC):
    """
    Launches, probes and stops service instances.
    """

    @abstractmethod
    async def launch(self, descriptor: ServiceDescriptor, config: RenderedConfig) -> ServiceHandle:
        """Starts the service; raises StartError if it cannot be launched."""

    @abstractmethod
    async def probe(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> ProbeResult:
        """Runs the service's health check once."""

    @abstractmethod
    def exit_code(self, handle: ServiceHandle) -> Optional[int]:
        """The exit code once the instance has exited, None while it runs."""

    @abstractmethod
    async def terminate(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> None:
        """Stops the instance gracefully, forcing it after the grace period."""

    @abstractmethod
    def output_context(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> Dict[str, str]:
        """Variables available to the service's output templates."""


class ProcessRuntime(ServiceRuntime):
    """
    Runs each service as a native OS process.
    """
    def __init__(self, settings: Optional[OrchestratorSettings] = None, base_dir: str = "."):
        """
        :param settings: Orchestrator settings (host, state directory).
        :param base_dir: Directory relative paths in descriptors are resolved against.
        """
        self.settings = settings or OrchestratorSettings()
        self.base_dir = base_dir
        self.network_manager = NetworkManager(self.settings.host)
        self.env_manager = EnvironmentManager(base_dir)
        self.prober = HealthProber(self.settings.host)

    def _path(self, *parts: str) -> str:
        return os.path.join(self.base_dir, *parts)

    async def launch(self, descriptor: ServiceDescriptor, config: RenderedConfig) -> ServiceHandle:
        start = descriptor.start
        command = start.full_command
        if not command:
            raise StartError(f"Service {descriptor.id} has no command to run")

        ports = self.network_manager.allocate_ports(descriptor)
        extra_env = self.network_manager.address_facts(descriptor.id)

        config_dir = None
        if config.files:
            config_dir = self._write_config_files(descriptor.id, config.files)
            extra_env["STACKUP_CONFIG_DIR"] = config_dir

        env = self.env_manager.get_merged_environment(config.environment, start.env_files, extra_env)
        working_dir = self._path(start.working_dir) if start.working_dir else None

        runner = ProcessRunner(
            descriptor.id,
            log_file=self._path(self.settings.logs_dir, f"{descriptor.id}.log"),
        )
        pid = await runner.start(command, env=env, working_dir=working_dir, memory_limit=start.memory_limit)
        if start.cpu_limit is not None:
            logger.debug("CPU limits are not enforced for native processes (%s)", descriptor.id)

        return ServiceHandle(
            service_id=descriptor.id,
            pid=pid,
            ports=ports,
            environment=env,
            working_dir=working_dir,
            config_dir=config_dir,
            runner=runner,
        )

    def _write_config_files(self, service_id: str, files: Dict[str, str]) -> str:
        config_dir = os.path.abspath(self._path(self.settings.state_dir, "config", service_id))
        for relative_path, content in files.items():
            target = os.path.abspath(os.path.join(config_dir, relative_path))
            if os.path.commonpath([config_dir, target]) != config_dir:
                raise StartError(f"Config file path '{relative_path}' escapes {config_dir}")
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, 'w') as f:
                f.write(content)
        return config_dir

    async def probe(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> ProbeResult:
        hc = descriptor.health_check
        if hc is None:
            running = handle.runner is not None and handle.runner.is_running()
            return ProbeResult(success=running, error="" if running else "Process is not running")
        return await self.prober.check(hc, handle.environment, handle.ports, handle.working_dir)

    def exit_code(self, handle: ServiceHandle) -> Optional[int]:
        if handle.runner is None:
            return None
        return handle.runner.get_exit_code()

    async def terminate(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> None:
        if handle.runner is not None:
            await handle.runner.stop(timeout=descriptor.start.stop_grace_period)

    def output_context(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> Dict[str, str]:
        context = dict(handle.environment)
        context.update(self.network_manager.address_facts(descriptor.id))
        if handle.config_dir:
            context["STACKUP_CONFIG_DIR"] = handle.config_dir
        return context
