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
Dependency resolution for services to determine startup stages and shutdown order.
"""
import logging
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from ..errors import CyclicDependency, UndeclaredReference, UnknownDependency
from ..MANAGERS.config_propagator import ConfigPropagator, template_dependencies
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_descriptor import DependencyCondition, ServiceDescriptor
from ..MODELS.service_state import ExecutionPlan

logger = logging.getLogger(__name__)

ServiceSet = Union[OrchestrationConfig, Mapping[str, ServiceDescriptor]]


def _services_of(source: ServiceSet) -> Mapping[str, ServiceDescriptor]:
    if isinstance(source, OrchestrationConfig):
        return source.services
    return source


class DependencyResolver:
    """
    Resolves the startup stages and shutdown order of services from their dependencies.
    """
    def __init__(self):
        self._propagator = ConfigPropagator()

    def resolve(self, source: ServiceSet) -> ExecutionPlan:
        """
        Validates the service set and groups it into stages.

        Every service lands in the first stage after all of its dependencies,
        so members of one stage can be started concurrently.

        :param source: The orchestration configuration or a mapping of descriptors.
        :return: The execution plan.
        :raises UnknownDependency: If a dependency names no declared service.
        :raises CyclicDependency: If the dependencies form a cycle.
        :raises UndeclaredReference: If a config value or config file template
            references a service that is not a healthy dependency.
        :raises ConfigurationError: If a config file template does not parse.
        """
        services = _services_of(source)
        self._check_references(services)

        cycle = self.find_cycle(services)
        if cycle:
            raise CyclicDependency(cycle)

        plan = self._stages(services)
        logger.debug("Resolved %d services into %d stages", len(services), len(plan))
        return plan

    def _check_references(self, services: Mapping[str, ServiceDescriptor]) -> None:
        for name in sorted(services):
            descriptor = services[name]
            for dep in sorted(descriptor.dependencies):
                if dep not in services:
                    raise UnknownDependency(name, dep)
            for key, ref in sorted(descriptor.references().items()):
                condition = descriptor.dependencies.get(ref.service_id)
                if condition != DependencyCondition.HEALTHY:
                    raise UndeclaredReference(name, ref.service_id, key)
            allowed = template_dependencies(descriptor)
            for path, names in self._propagator.template_references(descriptor).items():
                undeclared = sorted(names - allowed)
                if undeclared:
                    raise UndeclaredReference(name, undeclared[0], path)

    def find_cycle(self, source: ServiceSet) -> Optional[List[str]]:
        """
        Depth-first search with a recursion stack marker. The traversal keeps
        its own stack of (service, remaining dependencies) frames, so deep
        chains do not hit the interpreter's recursion limit.

        :return: The members of the first cycle found, in dependency order, or None.
        """
        services = _services_of(source)
        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        for root in sorted(services):
            if root in visited:
                continue
            frames: List[Tuple[str, Iterator[str]]] = [(root, iter(sorted(services[root].dependencies)))]
            path.append(root)
            on_path.add(root)
            while frames:
                name, deps = frames[-1]
                dep = next(deps, None)
                if dep is None:
                    frames.pop()
                    path.pop()
                    on_path.discard(name)
                    visited.add(name)
                    continue
                if dep in on_path:
                    return path[path.index(dep):]
                if dep in visited or dep not in services:
                    continue
                frames.append((dep, iter(sorted(services[dep].dependencies))))
                path.append(dep)
                on_path.add(dep)
        return None

    def _stages(self, services: Mapping[str, ServiceDescriptor]) -> ExecutionPlan:
        # Kahn's algorithm, one stage per round
        remaining: Dict[str, Set[str]] = {
            name: set(svc.dependencies) for name, svc in services.items()
        }
        placed: Set[str] = set()
        stages = []
        while remaining:
            ready = frozenset(name for name, deps in remaining.items() if deps <= placed)
            if not ready:
                # find_cycle already ran, so this only guards against misuse
                raise CyclicDependency(sorted(remaining))
            stages.append(ready)
            placed |= ready
            for name in ready:
                del remaining[name]
        return ExecutionPlan(stages=tuple(stages))

    @staticmethod
    def dependents_of(source: ServiceSet, service_id: str) -> Set[str]:
        """
        All services that depend on ``service_id``, directly or transitively.
        """
        services = _services_of(source)
        reverse: Dict[str, Set[str]] = {name: set() for name in services}
        for name, svc in services.items():
            for dep in svc.dependencies:
                reverse.setdefault(dep, set()).add(name)

        found: Set[str] = set()
        pending = [service_id]
        while pending:
            for dependent in reverse.get(pending.pop(), ()):
                if dependent not in found:
                    found.add(dependent)
                    pending.append(dependent)
        return found
