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
Orchestration for multiple services, managing dependencies and health.
"""
import asyncio
import logging
import os
from typing import Callable, Dict, List, Mapping, Optional, Set

from ..errors import ConfigurationError, PropagationError, StackupError
from ..MODELS.orchestration_config import FailureMode, OrchestrationConfig, OrchestratorSettings
from ..MODELS.service_descriptor import DependencyCondition
from ..MODELS.service_state import (
    ErrorKind,
    ExecutionPlan,
    RunOutcome,
    RunResult,
    ServiceFailure,
    ServiceState,
    ServiceStatus,
)
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.runtime import ProcessRuntime, ServiceRuntime
from .config_propagator import ConfigPropagator
from .service_supervisor import ServiceSupervisor
from .status_store import StatusStore

logger = logging.getLogger(__name__)

_READY_STATES = (ServiceState.READY, ServiceState.DEGRADED)
_STARTED_STATES = (ServiceState.PROBING, ServiceState.READY, ServiceState.DEGRADED)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    Services are started stage by stage. A stage only begins once every
    service of the previous stages has reached the level its dependents need,
    and shutdown always runs in reverse dependency order.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 runtime: Optional[ServiceRuntime] = None,
                 base_dir: str = ".",
                 settings: Optional[OrchestratorSettings] = None):
        """
        Initializes the orchestrator.

        :param config: Configuration for all services.
        :param runtime: Backend that runs the services, native processes by default.
        :param base_dir: Directory relative paths and the state directory are resolved against.
        :param settings: Overrides ``config.settings``.
        """
        self.config = config
        self.settings = settings or config.settings
        self.base_dir = base_dir
        self.runtime = runtime or ProcessRuntime(self.settings, base_dir)
        self.resolver = DependencyResolver()
        self.propagator = ConfigPropagator()
        self.plan: Optional[ExecutionPlan] = None

        self._listeners: List[Callable[[ServiceStatus], None]] = []
        self._changed = asyncio.Event()
        self._abort_error: Optional[StackupError] = None
        self._stop_requested = False
        self._startup_complete = False
        self._cascades: Set[asyncio.Task] = set()

        self._status_store: Optional[StatusStore] = None
        if self.settings.write_status_file:
            self._status_store = StatusStore(os.path.join(base_dir, self.settings.status_path))

        limiter = None
        if self.settings.max_parallel_starts:
            limiter = asyncio.Semaphore(self.settings.max_parallel_starts)

        self.supervisors: Dict[str, ServiceSupervisor] = {
            name: ServiceSupervisor(
                descriptor,
                self.runtime,
                on_change=self._on_status_change,
                liveness_interval=self.settings.liveness_interval,
                start_limiter=limiter,
            )
            for name, descriptor in config.services.items()
        }

    def add_listener(self, callback: Callable[[ServiceStatus], None]) -> None:
        """
        Registers a callback invoked with every published service status.
        """
        self._listeners.append(callback)

    def ps(self) -> Dict[str, ServiceStatus]:
        """
        Returns the status of all services.

        :return: Service names and their latest status snapshots.
        """
        return {name: sup.status for name, sup in self.supervisors.items()}

    def result(self) -> RunResult:
        """
        Aggregates the current statuses into a run result.
        """
        statuses = self.ps()
        failures = tuple(
            ServiceFailure(name, st.error_kind or ErrorKind.START, st.error or "")
            for name, st in sorted(statuses.items())
            if st.is_terminal_failure
        )
        blocked = tuple(name for name, st in sorted(statuses.items()) if st.is_blocked)

        if self._abort_error is not None:
            return RunResult(RunOutcome.ABORTED, failures, blocked, error=str(self._abort_error))
        if self._stop_requested and not self._startup_complete:
            return RunResult(RunOutcome.ABORTED, failures, blocked, error="Stop requested during startup")
        if failures:
            return RunResult(RunOutcome.PARTIAL_FAILURE, failures, blocked)
        return RunResult(RunOutcome.SUCCESS, failures, blocked)

    def request_stop(self) -> None:
        """
        Asks a running ``up``/``wait``/``run`` to wind down. Safe to call from
        signal handlers installed on the event loop.
        """
        if not self._stop_requested:
            logger.info("Stop requested")
        self._stop_requested = True
        self._changed.set()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> RunResult:
        """
        Starts all services, supervises them until a stop is requested or the
        run fails, then shuts everything down.

        :param stop_event: Optional event that requests a stop when set. It is
            watched once startup has finished; ``request_stop`` also
            interrupts startup.
        :return: The final run result.
        """
        result = await self.up()
        try:
            if result.outcome != RunOutcome.ABORTED and not self._should_abort():
                await self.wait(stop_event)
        finally:
            await self.down()
        return self.result()

    async def up(self) -> RunResult:
        """
        Starts all services in dependency order, stage by stage.

        :return: The result once startup has finished or been abandoned.
        """
        try:
            self.plan = self.resolver.resolve(self.config)
        except ConfigurationError as e:
            logger.error("Cannot start services: %s", e)
            self._abort_error = e
            self._publish_status_file()
            return self.result()

        logger.info(
            "Starting services in stages: %s",
            " -> ".join("{" + ", ".join(sorted(stage)) + "}" for stage in self.plan.stages),
        )

        for index, stage in enumerate(self.plan.stages, start=1):
            members = [name for name in sorted(stage) if not self.supervisors[name].status.is_blocked]
            if not members:
                logger.warning("Skipping stage %d, every service is blocked", index)
                continue
            logger.info("Starting stage %d/%d: %s", index, len(self.plan), ", ".join(members))

            for name in members:
                if not await self._launch(name):
                    return await self._abandon_startup()

            settled = await self._wait_until(
                lambda: self._should_abort() or all(self._settled(name) for name in members)
            )
            if not settled or self._should_abort():
                return await self._abandon_startup()

        self._startup_complete = True
        result = self.result()
        logger.info("Startup finished: %s", result.outcome.value)
        self._publish_status_file()
        return result

    async def _launch(self, name: str) -> bool:
        """
        Renders the configuration of one service and starts it.

        :return: False if startup must be abandoned.
        """
        supervisor = self.supervisors[name]
        dependencies_ok = await self._wait_until(
            lambda: self._dependencies_satisfied(name)
            or supervisor.status.is_blocked
            or self._stopped_dependency(name) is not None
        )
        if not dependencies_ok:
            return False
        stopped = self._stopped_dependency(name)
        if stopped is not None:
            supervisor.block(ErrorKind.DEPENDENCY, f"dependency '{stopped}' is stopped")
        if supervisor.status.is_blocked:
            return True

        try:
            rendered = self.propagator.render(supervisor.descriptor, self._dependency_outputs(name))
        except PropagationError as e:
            logger.error("Configuration for %s could not be rendered: %s", name, e)
            self._abort_error = e
            supervisor.block(ErrorKind.PROPAGATION, str(e))
            return False

        logger.info("Starting service: %s...", name)
        supervisor.start(rendered)
        return True

    async def _abandon_startup(self) -> RunResult:
        logger.error("Startup aborted, shutting down started services")
        await self.down()
        return self.result()

    async def wait(self, stop_event: Optional[asyncio.Event] = None) -> RunResult:
        """
        Blocks while services are supervised: until a stop is requested, a
        service fails for good in abort mode, or nothing is left running.
        """
        relay = None
        if stop_event is not None:
            relay = asyncio.create_task(self._relay_stop(stop_event))
        try:
            await self._wait_until(
                lambda: self._should_abort() or not any(st.is_alive for st in self.ps().values())
            )
        finally:
            if relay is not None:
                relay.cancel()
        return self.result()

    async def _relay_stop(self, stop_event: asyncio.Event) -> None:
        await stop_event.wait()
        self.request_stop()

    async def down(self) -> None:
        """
        Stops all services in reverse dependency order, one at a time.
        """
        while self._cascades:
            await asyncio.gather(*list(self._cascades))

        order = self.plan.shutdown_order() if self.plan else sorted(self.supervisors)
        for name in order:
            supervisor = self.supervisors[name]
            status = supervisor.status
            if status.state == ServiceState.STOPPED or status.is_terminal_failure or status.is_blocked:
                continue
            if supervisor.started:
                logger.info("Stopping service: %s...", name)
            await supervisor.stop()
        self._publish_status_file()

    async def _wait_until(self, predicate: Callable[[], bool]) -> bool:
        """
        Waits for ``predicate`` to hold, re-checking on every status change.

        :return: False if a stop was requested first.
        """
        while True:
            self._changed.clear()
            if self._stop_requested:
                return False
            if predicate():
                return True
            await self._changed.wait()

    def _required_condition(self, name: str) -> DependencyCondition:
        """
        The level a service must reach before its stage counts as complete:
        started if every dependent only needs it started, ready otherwise.
        """
        conditions = [
            svc.dependencies[name] for svc in self.config.services.values() if name in svc.dependencies
        ]
        if conditions and all(c == DependencyCondition.STARTED for c in conditions):
            return DependencyCondition.STARTED
        return DependencyCondition.HEALTHY

    def _settled(self, name: str) -> bool:
        status = self.supervisors[name].status
        if status.is_terminal_failure or status.is_blocked or status.state == ServiceState.STOPPED:
            return True
        if self._required_condition(name) == DependencyCondition.STARTED:
            return status.state in _STARTED_STATES
        return status.state in _READY_STATES

    def _dependencies_satisfied(self, name: str) -> bool:
        descriptor = self.config.services[name]
        for dep, condition in descriptor.dependencies.items():
            state = self.supervisors[dep].status.state
            wanted = _STARTED_STATES if condition == DependencyCondition.STARTED else _READY_STATES
            if state not in wanted:
                return False
        return True

    def _stopped_dependency(self, name: str) -> Optional[str]:
        for dep in sorted(self.config.services[name].dependencies):
            if self.supervisors[dep].status.state == ServiceState.STOPPED:
                return dep
        return None

    def _dependency_outputs(self, name: str) -> Dict[str, Mapping[str, str]]:
        return {
            dep: self.supervisors[dep].outputs
            for dep in self.config.services[name].dependencies
        }

    def _failed(self) -> List[str]:
        return [name for name, st in self.ps().items() if st.is_terminal_failure]

    def _should_abort(self) -> bool:
        return self.settings.failure_mode == FailureMode.ABORT and bool(self._failed())

    def _on_status_change(self, status: ServiceStatus) -> None:
        for listener in self._listeners:
            listener(status)
        if status.is_terminal_failure:
            self._contain_failure(status.service_id)
        self._publish_status_file()
        self._changed.set()

    def _contain_failure(self, failed: str) -> None:
        """
        Keeps dependents of a permanently failed service from running.
        """
        for name in sorted(self.resolver.dependents_of(self.config, failed)):
            supervisor = self.supervisors[name]
            if not supervisor.started:
                supervisor.block(ErrorKind.DEPENDENCY, f"dependency '{failed}' failed")
            elif supervisor.status.is_alive:
                task = asyncio.create_task(supervisor.fail_for_dependency(failed))
                self._cascades.add(task)
                task.add_done_callback(self._cascades.discard)

    def _publish_status_file(self) -> None:
        if self._status_store is None:
            return
        try:
            self._status_store.write(self.settings.project_name, self.result(), self.ps(), self.plan)
        except OSError as e:
            logger.warning("Could not write status file: %s", e)
