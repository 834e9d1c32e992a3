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
Managers for handling environment variables and .env file resolution.
"""
import logging
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = ".", inherit: bool = True):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param inherit: Start from the orchestrator's own environment.
        """
        self.base_dir = base_dir
        self.inherit = inherit

    def load_env_file(self, env_file: str) -> Dict[str, str]:
        """
        Reads one .env file; a missing file yields nothing.
        """
        file_path = os.path.join(self.base_dir, env_file)
        if not os.path.exists(file_path):
            logger.warning("env_file %s does not exist, skipping", file_path)
            return {}
        return {k: v for k, v in dotenv_values(file_path).items() if v is not None}

    def get_merged_environment(self,
                               explicit_env: Mapping[str, str],
                               env_files: List[str],
                               extra_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges environment variables from the current process, specified .env
        files, the rendered service config and any extra variables.

        :param explicit_env: The rendered config of the service.
        :param env_files: Paths to .env files, later files override earlier ones.
        :param extra_env: Variables set by the orchestrator itself, applied last.
        :return: The merged environment.
        """
        merged_env = os.environ.copy() if self.inherit else {}

        for env_file in env_files:
            merged_env.update(self.load_env_file(env_file))

        merged_env.update(explicit_env)
        if extra_env:
            merged_env.update(extra_env)
        return merged_env
