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
Execution of system processes with log redirection and lifecycle management.
"""
import asyncio
import logging
import os
import subprocess
from typing import Dict, IO, List, Optional

import psutil

from ..errors import StartError
from ..UTILS.units import parse_memory

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be appended.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[asyncio.subprocess.Process] = None
        self._log_handle: Optional[IO[str]] = None

    async def start(self,
                    command: List[str],
                    env: Dict[str, str],
                    working_dir: Optional[str] = None,
                    memory_limit: Optional[str] = None) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
            memory_limit (Optional[str]): Address space limit such as "512m".

        Returns:
            int: The pid of the started process.

        Raises:
            StartError: If the executable cannot be launched.
        """
        if not command:
            raise StartError(f"[{self.name}] No command specified, nothing to run")

        if working_dir:
            os.makedirs(working_dir, exist_ok=True)

        stdout = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._close_log()
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            # No shell, arguments are passed verbatim (CWE-78)
            self.process = await asyncio.create_subprocess_exec(
                *command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
            )
        except OSError as e:
            self._close_log()
            raise StartError(f"[{self.name}] Failed to start: {e}") from e

        if memory_limit:
            self._apply_memory_limit(memory_limit)
        return self.process.pid

    def _apply_memory_limit(self, memory_limit: str) -> None:
        limit = parse_memory(memory_limit)
        if limit is None:
            logger.warning("[%s] Ignoring unparseable memory limit %r", self.name, memory_limit)
            return
        if not hasattr(psutil, "RLIMIT_AS"):
            logger.warning("[%s] Memory limits are not supported on this platform", self.name)
            return
        try:
            psutil.Process(self.process.pid).rlimit(psutil.RLIMIT_AS, (limit, limit))
        except (psutil.Error, OSError) as e:
            logger.warning("[%s] Could not apply memory limit: %s", self.name, e)

    async def stop(self, timeout: float = 10):
        """
        Stops the process and its children by sending SIGTERM, followed by
        SIGKILL if they do not exit in time.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process is None:
            return
        if self.process.returncode is None:
            logger.info("[%s] Stopping process %d...", self.name, self.process.pid)
            children = self._children()
            for proc in children:
                self._signal(proc, "terminate")
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.process.wait()

            if children:
                loop = asyncio.get_running_loop()
                _, alive = await loop.run_in_executor(None, psutil.wait_procs, children, timeout)
                for proc in alive:
                    self._signal(proc, "kill")
        self._close_log()

    def _children(self) -> List[psutil.Process]:
        try:
            return psutil.Process(self.process.pid).children(recursive=True)
        except psutil.Error:
            return []

    @staticmethod
    def _signal(proc: psutil.Process, action: str) -> None:
        try:
            getattr(proc, action)()
        except psutil.NoSuchProcess:
            pass

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.returncode is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.returncode
        return None
