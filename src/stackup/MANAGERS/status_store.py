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
Publication of the aggregate run status to a JSON file, so that other
processes (``stackup ps``, supervisory tooling) can observe a running stack.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..MODELS.service_state import ExecutionPlan, RunResult, ServiceStatus

logger = logging.getLogger(__name__)


class StatusStore:
    """
    Writes and reads the status file of a project.
    """

    def __init__(self, path: str):
        """
        :param path: Location of the status file.
        """
        self.path = path

    def write(self,
              project: str,
              result: RunResult,
              statuses: Mapping[str, ServiceStatus],
              plan: Optional[ExecutionPlan] = None) -> None:
        """
        Replaces the status file atomically.
        """
        data = {
            "project": project,
            "pid": os.getpid(),
            "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "result": result.to_dict(),
            "plan": [sorted(stage) for stage in plan.stages] if plan else [],
            "services": {name: statuses[name].to_dict() for name in sorted(statuses)},
        }
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def read(self) -> Optional[Dict[str, Any]]:
        """
        Loads the status file.

        :return: The decoded status, or None if there is no readable file.
        """
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not read status file %s: %s", self.path, e)
            return None
