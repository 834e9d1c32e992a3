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
Rendering of a dependent's configuration from the outputs of its dependencies.
"""
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Set

from jinja2 import Environment, StrictUndefined, TemplateError, TemplateSyntaxError, UndefinedError, meta

from ..errors import ConfigurationError, MissingOutput, PropagationError
from ..MODELS.service_descriptor import (
    RESERVED_SERVICE_IDS,
    DependencyCondition,
    OutputRef,
    ServiceDescriptor,
)

logger = logging.getLogger(__name__)

DependencyOutputs = Mapping[str, Mapping[str, str]]


def template_environment() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )


def template_dependencies(descriptor: ServiceDescriptor) -> Set[str]:
    """
    Dependencies whose outputs config file templates may read: only those
    the service waits on until they are healthy.
    """
    return {
        dep for dep, condition in descriptor.dependencies.items()
        if condition == DependencyCondition.HEALTHY
    }


@dataclass(frozen=True)
class RenderedConfig:
    """Configuration ready to hand to a service at launch."""

    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    files: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


class ConfigPropagator:
    """
    Substitutes dependency outputs into a service's config and config files.
    """
    def __init__(self):
        self._jinja = template_environment()

    def render(self, descriptor: ServiceDescriptor, dependency_outputs: DependencyOutputs) -> RenderedConfig:
        """
        Renders the config of ``descriptor``.

        Literal values pass through unchanged, ``OutputRef`` values are looked
        up in the committed outputs of the referenced dependency.

        :param descriptor: The service about to start.
        :param dependency_outputs: Outputs of its dependencies, keyed by service id.
        :return: The rendered environment and files.
        :raises MissingOutput: If a referenced output has not been published.
        :raises PropagationError: If a config file template cannot be rendered.
        """
        environment: Dict[str, str] = {}
        for key in sorted(descriptor.config):
            value = descriptor.config[key]
            if isinstance(value, OutputRef):
                environment[key] = self._lookup(descriptor, value, dependency_outputs)
            else:
                environment[key] = value

        files: Dict[str, str] = {}
        if descriptor.config_files:
            context = self._template_context(descriptor, dependency_outputs, environment)
            for path in sorted(descriptor.config_files):
                files[path] = self._render_file(descriptor, path, context)

        logger.debug(
            "Rendered %d config keys and %d files for %s",
            len(environment), len(files), descriptor.id,
        )
        return RenderedConfig(
            environment=MappingProxyType(environment),
            files=MappingProxyType(files),
        )

    def template_references(self, descriptor: ServiceDescriptor) -> Dict[str, Set[str]]:
        """
        Names each config file template reads from its context, without
        rendering it. Built-in template names and Jinja globals are left out,
        so what remains must be a healthy dependency.

        :raises ConfigurationError: If a template does not parse.
        """
        builtins = RESERVED_SERVICE_IDS | set(self._jinja.globals)
        names: Dict[str, Set[str]] = {}
        for path in sorted(descriptor.config_files):
            try:
                ast = self._jinja.parse(descriptor.config_files[path])
            except TemplateSyntaxError as e:
                raise ConfigurationError(
                    f"Config file '{path}' of '{descriptor.id}' is not a valid template: {e}"
                ) from e
            names[path] = meta.find_undeclared_variables(ast) - builtins
        return names

    @staticmethod
    def _lookup(descriptor: ServiceDescriptor, ref: OutputRef, dependency_outputs: DependencyOutputs) -> str:
        outputs = dependency_outputs.get(ref.service_id)
        if outputs is None or ref.key not in outputs:
            raise MissingOutput(ref.service_id, ref.key, service_id=descriptor.id)
        return outputs[ref.key]

    @staticmethod
    def _template_context(descriptor: ServiceDescriptor,
                          dependency_outputs: DependencyOutputs,
                          environment: Mapping[str, str]) -> Dict[str, object]:
        outputs = {
            dep: dict(dependency_outputs.get(dep, {}))
            for dep in sorted(template_dependencies(descriptor))
        }
        context: Dict[str, object] = {dep: values for dep, values in outputs.items() if dep.isidentifier()}
        context["outputs"] = outputs
        context["config"] = dict(environment)
        context["service"] = descriptor.id
        return context

    def _render_file(self, descriptor: ServiceDescriptor, path: str, context: Dict[str, object]) -> str:
        try:
            return self._jinja.from_string(descriptor.config_files[path]).render(**context)
        except UndefinedError as e:
            raise PropagationError(
                f"Config file '{path}' of '{descriptor.id}' uses an undefined value: {e}"
            ) from e
        except TemplateError as e:
            raise PropagationError(
                f"Config file '{path}' of '{descriptor.id}' could not be rendered: {e}"
            ) from e
