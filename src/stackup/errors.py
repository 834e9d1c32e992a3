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
Exception hierarchy for stackup.

Configuration problems are detected before anything is started. Start and
probe errors belong to a single service and feed its restart policy.
Propagation errors mean the ordering guarantee was broken and end the run.
"""
from typing import List, Optional


class StackupError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(StackupError):
    """The service set is malformed and cannot be orchestrated."""


class ManifestError(ConfigurationError):
    """The manifest file could not be read or has an invalid structure."""


class InterpolationError(ConfigurationError):
    """A ${VAR} placeholder could not be resolved."""


class UnknownDependency(ConfigurationError):
    """A service depends on an id that is not declared."""

    def __init__(self, service_id: str, dependency_id: str):
        super().__init__(
            f"Service '{service_id}' depends on unknown service '{dependency_id}'"
        )
        self.service_id = service_id
        self.dependency_id = dependency_id


class CyclicDependency(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: List[str]):
        path = " -> ".join(members + members[:1])
        super().__init__(f"Circular dependency detected: {path}")
        self.members = list(members)


class UndeclaredReference(ConfigurationError):
    """A config value or config file references a service that is not a healthy dependency."""

    def __init__(self, service_id: str, dependency_id: str, key: str):
        super().__init__(
            f"Service '{service_id}' config '{key}' references '{dependency_id}', "
            f"which is not declared as a service_healthy dependency"
        )
        self.service_id = service_id
        self.dependency_id = dependency_id
        self.key = key


class StartError(StackupError):
    """A service process could not be launched."""


class ProbeError(StackupError):
    """A service failed its health check or exited unexpectedly."""


class PropagationError(StackupError):
    """Configuration for a dependent could not be rendered."""


class MissingOutput(PropagationError):
    """A referenced dependency has not published the requested output."""

    def __init__(self, dependency_id: str, output_key: str, service_id: Optional[str] = None):
        target = f" for '{service_id}'" if service_id else ""
        super().__init__(
            f"Output '{dependency_id}.{output_key}' is not available{target}"
        )
        self.dependency_id = dependency_id
        self.output_key = output_key
        self.service_id = service_id


class StateTransitionError(StackupError):
    """A supervisor attempted a transition its state machine does not allow."""
