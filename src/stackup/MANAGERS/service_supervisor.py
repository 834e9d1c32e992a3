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
Lifecycle supervision of a single service: launch, readiness probing,
liveness monitoring and restart policy with capped exponential backoff.

Each supervisor runs one asyncio task and is the only writer of its service's
state and outputs. Everyone else reads the immutable snapshots it publishes.
"""
import asyncio
import contextlib
import logging
import time
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..errors import ConfigurationError, ProbeError, StartError, StateTransitionError
from ..MODELS.service_descriptor import RestartCondition, ServiceDescriptor
from ..MODELS.service_state import ALLOWED_TRANSITIONS, ErrorKind, ServiceState, ServiceStatus
from ..RUNNERS.probes import ProbeResult
from ..RUNNERS.runtime import ServiceHandle, ServiceRuntime
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .config_propagator import RenderedConfig

logger = logging.getLogger(__name__)

StatusCallback = Callable[[ServiceStatus], None]

# Exit code 0 under these conditions is a clean completion, not a failure
_CLEAN_EXIT_CONDITIONS = (RestartCondition.NO, RestartCondition.ON_FAILURE)

# Seconds allowed on top of the stop grace periods before a stop is forced
STOP_MARGIN = 5.0


class ServiceSupervisor:
    """
    Drives one service through its state machine.
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        runtime: ServiceRuntime,
        on_change: Optional[StatusCallback] = None,
        liveness_interval: float = 5.0,
        start_limiter: Optional[asyncio.Semaphore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the supervisor.

        :param descriptor: The service to supervise.
        :param runtime: Backend used to launch, probe and stop the service.
        :param on_change: Called with every published status snapshot.
        :param liveness_interval: Seconds between exit checks for services
            without a health check.
        :param start_limiter: Shared semaphore bounding concurrent launches.
        :param clock: Monotonic time source.
        """
        self.descriptor = descriptor
        self.runtime = runtime
        self.on_change = on_change
        self.liveness_interval = liveness_interval
        self._start_limiter = start_limiter
        self._clock = clock

        self._status = ServiceStatus(service_id=descriptor.id)
        self._outputs: Mapping[str, str] = MappingProxyType({})
        self._task: Optional[asyncio.Task] = None
        self._handle: Optional[ServiceHandle] = None
        self._cancel_reason: Optional[Tuple[ErrorKind, str]] = None
        self._stopping = False

    @property
    def service_id(self) -> str:
        return self.descriptor.id

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def outputs(self) -> Mapping[str, str]:
        """Outputs committed when the service last became ready."""
        return self._outputs

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self, config: RenderedConfig) -> asyncio.Task:
        """
        Starts supervision with the rendered configuration.

        :raises StateTransitionError: If the service is not pending.
        """
        if self._task is not None or self._status.state != ServiceState.PENDING:
            raise StateTransitionError(
                f"{self.service_id} cannot be started from {self._status.state.value}"
            )
        self._task = asyncio.create_task(self._supervise(config), name=f"supervise:{self.service_id}")
        return self._task

    def block(self, kind: ErrorKind, message: str) -> None:
        """
        Records why a pending service will not be started.
        """
        if self._task is not None or self._status.state != ServiceState.PENDING:
            return
        logger.warning("%s will not be started: %s", self.service_id, message)
        self._publish(ServiceState.PENDING, error_kind=kind, error=message)

    async def stop(self) -> None:
        """
        Cancels supervision and stops the service. A terminal failure is kept.
        """
        if self._task is not None and not self._task.done():
            await self._cancel_task()
        if self._status.state == ServiceState.PENDING:
            self._publish(ServiceState.STOPPED)

    async def fail_for_dependency(self, dependency_id: str) -> None:
        """
        Stops the service because a dependency failed for good, leaving it in
        a terminal failed state. A service that was never started stays
        pending and is marked blocked.
        """
        message = f"dependency '{dependency_id}' failed"
        if self._task is None:
            self.block(ErrorKind.DEPENDENCY, message)
            return
        if self._task.done() or not self._status.is_alive:
            return
        logger.error("Stopping %s: %s", self.service_id, message)
        self._cancel_reason = (ErrorKind.DEPENDENCY, message)
        await self._cancel_task()
        if self._status.state == ServiceState.PENDING:
            self._publish(ServiceState.PENDING, error_kind=ErrorKind.DEPENDENCY, error=message)

    async def _cancel_task(self) -> None:
        """
        Cancels the supervision task and waits for it, bounded by the stop
        grace period. A cancellation swallowed inside a runtime call is caught
        by the checkpoints of the task; a task that still does not finish gets
        its process terminated here.
        """
        self._stopping = True
        timeout = 2 * self.descriptor.start.stop_grace_period + STOP_MARGIN
        for _ in range(2):
            self._task.cancel()
            done, _ = await asyncio.wait({self._task}, timeout=timeout)
            if done:
                with contextlib.suppress(asyncio.CancelledError):
                    self._task.result()
                return
            logger.warning("%s did not stop within %.1fs", self.service_id, timeout)

        logger.error("Supervision of %s is stuck, terminating its process", self.service_id)
        await self._release_handle()
        if self._cancel_reason is not None:
            kind, message = self._cancel_reason
            self._publish(ServiceState.FAILED, terminal=True, error_kind=kind, error=message, pid=None)
        elif self._status.state != ServiceState.STOPPED:
            self._publish(ServiceState.STOPPED, pid=None)

    def _checkpoint(self) -> None:
        # asyncio.wait_for can drop a cancellation that races with completion
        if self._stopping:
            raise asyncio.CancelledError()

    # Supervision task

    def _retrying(self) -> AsyncRetrying:
        policy = self.descriptor.restart_policy
        attempts = policy.max_retries + 1 if policy.allows_restart else 1
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(
                initial=policy.backoff_base,
                max=policy.backoff_cap,
                exp_base=policy.backoff_multiplier,
                jitter=policy.jitter,
            ),
            retry=retry_if_exception_type((StartError, ProbeError)),
            before_sleep=self._before_restart,
            reraise=True,
        )

    def _before_restart(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Restarting %s in %.1fs (restart %d of %d): %s",
            self.service_id,
            delay,
            retry_state.attempt_number,
            self.descriptor.restart_policy.max_retries,
            retry_state.outcome.exception(),
        )

    async def _supervise(self, config: RenderedConfig) -> None:
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._run_attempt(config, attempt.retry_state.attempt_number)
        except asyncio.CancelledError:
            await self._release_handle()
            if self._cancel_reason is not None:
                kind, message = self._cancel_reason
                self._publish(ServiceState.FAILED, terminal=True, error_kind=kind, error=message, pid=None)
            else:
                logger.info("%s stopped", self.service_id)
                self._publish(ServiceState.STOPPED, pid=None)
            raise
        except StartError as e:
            await self._give_up(ErrorKind.START, e)
        except ProbeError as e:
            await self._give_up(ErrorKind.PROBE, e)
        except ConfigurationError as e:
            await self._give_up(ErrorKind.CONFIGURATION, e)
        except Exception as e:
            logger.exception("Unexpected error while supervising %s", self.service_id)
            await self._give_up(ErrorKind.START, e)

    async def _give_up(self, kind: ErrorKind, error: Exception) -> None:
        await self._release_handle()
        logger.error("%s failed permanently (%s): %s", self.service_id, kind.value, error)
        self._publish(ServiceState.FAILED, terminal=True, error_kind=kind, error=str(error), pid=None)

    async def _run_attempt(self, config: RenderedConfig, attempt_number: int) -> None:
        self._checkpoint()
        self._publish(
            ServiceState.STARTING,
            restart_count=attempt_number - 1,
            error_kind=None,
            error=None,
        )
        try:
            handle = await self._launch(config)
            self._checkpoint()
            self._publish(ServiceState.PROBING, pid=handle.pid)

            await self._await_readiness(handle)
            self._outputs = MappingProxyType(self._resolve_outputs(handle))
            logger.info("%s is ready", self.service_id)
            self._publish(ServiceState.READY, outputs=self._outputs)

            await self._watch_liveness(handle)
        except StartError as e:
            await self._release_handle()
            self._publish(ServiceState.FAILED, error_kind=ErrorKind.START, error=str(e), pid=None)
            raise
        except ProbeError as e:
            await self._release_handle()
            self._publish(ServiceState.FAILED, error_kind=ErrorKind.PROBE, error=str(e), pid=None)
            raise

        await self._release_handle()
        logger.info("%s exited cleanly", self.service_id)
        self._publish(ServiceState.STOPPED, pid=None)

    async def _launch(self, config: RenderedConfig) -> ServiceHandle:
        timeout = self.descriptor.start.start_timeout
        limiter = self._start_limiter if self._start_limiter is not None else contextlib.nullcontext()
        try:
            async with limiter:
                self._handle = await asyncio.wait_for(
                    self.runtime.launch(self.descriptor, config), timeout=timeout
                )
        except asyncio.TimeoutError as e:
            raise StartError(f"Launching {self.service_id} timed out after {timeout}s") from e
        except OSError as e:
            raise StartError(f"Launching {self.service_id} failed: {e}") from e
        return self._handle

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.runtime.terminate(self.descriptor, handle)

    async def _probe_once(self, handle: ServiceHandle) -> ProbeResult:
        hc = self.descriptor.health_check
        timeout = hc.timeout if hc else None
        try:
            return await asyncio.wait_for(self.runtime.probe(self.descriptor, handle), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeResult(success=False, error="Health check timed out")
        except OSError as e:
            return ProbeResult(success=False, error=str(e))

    def _ensure_running(self, handle: ServiceHandle) -> None:
        code = self.runtime.exit_code(handle)
        if code is not None:
            raise ProbeError(f"{self.service_id} exited with code {code} before becoming ready")

    async def _await_readiness(self, handle: ServiceHandle) -> None:
        hc = self.descriptor.health_check
        if hc is None:
            self._ensure_running(handle)
            return

        deadline = self._clock() + hc.start_period
        successes = failures = 0
        while True:
            self._ensure_running(handle)
            result = await self._probe_once(handle)
            self._checkpoint()
            if result.success:
                successes += 1
                failures = 0
                if successes >= hc.success_threshold:
                    return
            else:
                failures += 1
                successes = 0
                logger.debug("%s readiness probe failed (%d): %s", self.service_id, failures, result.error)
                if failures >= hc.failure_threshold:
                    raise ProbeError(
                        f"{self.service_id} failed {failures} consecutive readiness probes: {result.error}"
                    )

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ProbeError(f"{self.service_id} did not become ready within {hc.start_period}s")
            await asyncio.sleep(min(hc.interval, remaining))

    async def _watch_liveness(self, handle: ServiceHandle) -> None:
        hc = self.descriptor.health_check
        interval = hc.interval if hc else self.liveness_interval
        failures = 0
        while True:
            await asyncio.sleep(interval)
            self._checkpoint()

            code = self.runtime.exit_code(handle)
            if code is not None:
                if code == 0 and self.descriptor.restart_policy.condition in _CLEAN_EXIT_CONDITIONS:
                    return
                raise ProbeError(f"{self.service_id} exited with code {code}")

            if hc is None:
                continue

            result = await self._probe_once(handle)
            self._checkpoint()
            if result.success:
                failures = 0
                if self._status.state == ServiceState.DEGRADED:
                    logger.info("%s recovered", self.service_id)
                    self._publish(ServiceState.READY, error=None)
                continue

            failures += 1
            if self._status.state == ServiceState.READY:
                logger.warning("%s is degraded: %s", self.service_id, result.error)
                self._publish(ServiceState.DEGRADED, error=result.error)
            if failures >= hc.failure_threshold:
                raise ProbeError(
                    f"{self.service_id} failed {failures} consecutive liveness probes: {result.error}"
                )

    def _resolve_outputs(self, handle: ServiceHandle) -> Dict[str, str]:
        context = self.runtime.output_context(self.descriptor, handle)
        return {
            key: EnvironmentInterpolator.interpolate(template, context, strict=True)
            for key, template in sorted(self.descriptor.outputs.items())
        }

    def _publish(self, state: ServiceState, **changes) -> None:
        current = self._status.state
        if state != current and state not in ALLOWED_TRANSITIONS[current]:
            raise StateTransitionError(
                f"{self.service_id}: transition {current.value} -> {state.value} is not allowed"
            )
        self._status = self._status.evolve(state=state, **changes)
        logger.debug("%s -> %s", self.service_id, state.value)
        if self.on_change:
            self.on_change(self._status)
