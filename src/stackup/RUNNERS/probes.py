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
Health probes: Docker-style check commands and TCP connect checks.
"""
import asyncio
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from ..MODELS.service_descriptor import HealthCheck

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 500


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single probe."""

    success: bool
    output: str = ""
    error: str = ""


def parse_test(test: List[str]) -> Tuple[Optional[Union[List[str], str]], bool]:
    """
    Interprets a Compose ``test`` list.

    :return: The command (``None`` for ``NONE`` or an empty test) and whether it
        must run through the shell.
    """
    if not test or test[0] == "NONE":
        return None, False
    if test[0] == "CMD":
        return list(test[1:]), False
    if test[0] == "CMD-SHELL":
        return (test[1] if len(test) > 1 else ""), True
    return list(test), False


class HealthProber:
    """
    Runs the probes declared by a :class:`HealthCheck`.
    """
    def __init__(self, host: str = "127.0.0.1"):
        self.host = host

    async def check(self,
                    health_check: HealthCheck,
                    env: Dict[str, str],
                    host_ports: Dict[int, int],
                    working_dir: Optional[str] = None) -> ProbeResult:
        """
        Runs every probe of the health check.

        :param health_check: The check to run.
        :param env: Environment for check commands.
        :param host_ports: Container port to host port mapping of the service.
        :param working_dir: Working directory for check commands.
        :return: A failed result as soon as one probe fails.
        """
        result = ProbeResult(success=True)
        command, use_shell = parse_test(health_check.test)
        if command is not None:
            result = await self.run_command(command, use_shell, env, health_check.timeout, working_dir)
            if not result.success:
                return result

        if health_check.tcp_port is not None:
            port = host_ports.get(health_check.tcp_port, health_check.tcp_port)
            result = await self.connect(self.host, port, health_check.timeout)
        return result

    async def run_command(self,
                          command: Union[List[str], str],
                          use_shell: bool,
                          env: Dict[str, str],
                          timeout: float,
                          working_dir: Optional[str] = None) -> ProbeResult:
        """
        Runs a check command; exit code 0 means healthy.
        """
        try:
            if use_shell:
                proc = await asyncio.create_subprocess_shell(
                    command, env=env, cwd=working_dir,
                    stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                )
            else:
                proc = await asyncio.create_subprocess_exec(
                    *command, env=env, cwd=working_dir,
                    stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                )
        except OSError as e:
            return ProbeResult(success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ProbeResult(success=False, error="Health check timed out")

        out = stdout.decode(errors="replace")[:OUTPUT_LIMIT]
        if proc.returncode == 0:
            return ProbeResult(success=True, output=out)
        err = stderr.decode(errors="replace")[:OUTPUT_LIMIT]
        return ProbeResult(success=False, output=out, error=err or f"Exit code: {proc.returncode}")

    async def connect(self, host: str, port: int, timeout: float) -> ProbeResult:
        """
        Succeeds when a TCP connection to ``host:port`` can be opened.
        """
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeResult(success=False, error=f"Connection to {host}:{port} timed out")
        except OSError as e:
            return ProbeResult(success=False, error=f"Connection to {host}:{port} failed: {e}")
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(success=True, output=f"{host}:{port} accepting connections")
