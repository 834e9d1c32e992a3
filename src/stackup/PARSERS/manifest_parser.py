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
Parser for stack manifests.

Accepts Compose-style files (``services`` as a mapping, ``depends_on``,
``healthcheck``, ``restart``) as well as the declarative list form
(``services: [{id, dependsOn, start, config, healthCheck}]``).
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import InterpolationError, ManifestError
from ..MODELS.orchestration_config import OrchestrationConfig, OrchestratorSettings
from ..MODELS.service_descriptor import DependencyCondition, RestartCondition
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.units import parse_duration

logger = logging.getLogger(__name__)

# Keys whose values are templates resolved later, not at load time
_DEFERRED_KEYS = ("outputs", "config_files")

_KNOWN_KEYS = {
    "id", "depends_on", "dependsOn", "command", "entrypoint", "start",
    "working_dir", "env_file", "environment", "config", "config_files",
    "outputs", "ports", "healthcheck", "healthCheck", "restart",
    "restart_policy", "restartPolicy", "mem_limit", "cpus", "deploy",
    "stop_grace_period", "start_timeout", "labels",
}

_DEPLOY_CONDITIONS = {
    "none": RestartCondition.NO,
    "on-failure": RestartCondition.ON_FAILURE,
    "any": RestartCondition.ALWAYS,
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


class ManifestParser:
    """
    Parser for stackup.yml / docker-compose.yml style manifests.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for ``${VAR}`` interpolation. When omitted the
            process environment is used, overlaid on a ``.env`` file next to
            the manifest.
        """
        self.context = context

    def parse(self, manifest_path: str) -> OrchestrationConfig:
        """
        Parses a manifest from a path.

        :param manifest_path: Path to the manifest.
        :return: Parsed configuration.
        :raises ManifestError: If the file cannot be read or is malformed.
        """
        try:
            with open(manifest_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ManifestError(f"Cannot read manifest {manifest_path}: {e}") from e
        base_dir = os.path.dirname(os.path.abspath(manifest_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self,
                          content: str,
                          context: Optional[Mapping[str, str]] = None,
                          base_dir: Optional[str] = None) -> OrchestrationConfig:
        """
        Parses a manifest from a string.

        :param content: YAML content of the manifest.
        :param context: Interpolation variables, overriding the parser's own.
        :param base_dir: Directory of the manifest; used for ``.env`` lookup
            and as the default project name.
        :return: Parsed configuration.
        :raises ManifestError: If the manifest is malformed.
        """
        base_dir = base_dir or os.getcwd()
        if context is None:
            context = self.context if self.context is not None else self._default_context(base_dir)

        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise ManifestError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a mapping")

        try:
            data = self._interpolate(data, context)
        except InterpolationError as e:
            raise ManifestError(str(e)) from e

        block = data.get('x-stackup')
        if block is not None and not (isinstance(block, dict) and all(isinstance(k, str) for k in block)):
            raise ManifestError("'x-stackup' must be a mapping of setting names")

        try:
            services = [
                self._parse_service(name, spec)
                for name, spec in self._service_entries(data.get('services'))
            ]
            settings = OrchestratorSettings.from_sources(
                block,
                environ=context,
                project_name=data.get('name') or os.path.basename(os.path.normpath(base_dir)),
            )
            return OrchestrationConfig(services=services, settings=settings)
        except ValidationError as e:
            raise ManifestError(f"Invalid manifest: {e}") from e
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise ManifestError(f"Invalid manifest: {e}") from e

    @staticmethod
    def _default_context(base_dir: str) -> Dict[str, str]:
        context = {}
        env_path = os.path.join(base_dir, ".env")
        if os.path.isfile(env_path):
            context.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
        context.update(os.environ)
        return context

    def _interpolate(self, value: Any, context: Mapping[str, str], key: Optional[str] = None) -> Any:
        """
        Recursively interpolates strings. Unset variables become empty strings,
        as in Compose.
        """
        if key in _DEFERRED_KEYS:
            return value
        if isinstance(value, str):
            return EnvironmentInterpolator.interpolate(value, context, strict=False)
        if isinstance(value, dict):
            return {k: self._interpolate(v, context, k) for k, v in value.items()}
        if isinstance(value, list):
            return [self._interpolate(v, context) for v in value]
        return value

    @staticmethod
    def _service_entries(services: Any) -> List[tuple]:
        if services is None:
            return []
        if isinstance(services, dict):
            return [(name, spec or {}) for name, spec in services.items()]
        if isinstance(services, list):
            entries = []
            for spec in services:
                if not isinstance(spec, dict) or 'id' not in spec:
                    raise ManifestError("Every service in a list must be a mapping with an 'id'")
                entries.append((spec['id'], spec))
            return entries
        raise ManifestError("'services' must be a mapping or a list")

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        """
        Normalizes a single service entry into descriptor fields.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: Keyword arguments for a ServiceDescriptor.
        """
        if not isinstance(spec, dict):
            raise ManifestError(f"Service '{name}' must be a mapping")
        for key in spec:
            if key not in _KNOWN_KEYS:
                logger.debug("Ignoring unsupported key '%s' of service '%s'", key, name)

        start = spec.get('start') or {}
        resources = start.get('resources') or {}
        limits = ((spec.get('deploy') or {}).get('resources') or {}).get('limits') or {}

        start_spec = {
            'command': self._to_command(start.get('command', spec.get('command'))),
            'entrypoint': self._to_command(start.get('entrypoint', spec.get('entrypoint'))),
            'working_dir': start.get('working_dir', spec.get('working_dir')),
            'env_files': self._to_list(start.get('env_file', spec.get('env_file'))),
            'ports': self._parse_ports(start.get('ports', spec.get('ports'))),
            'cpu_limit': resources.get('cpus', spec.get('cpus', limits.get('cpus'))),
            'memory_limit': self._to_str(resources.get('memory', spec.get('mem_limit', limits.get('memory')))),
        }
        for field, key in (('start_timeout', 'start_timeout'), ('stop_grace_period', 'stop_grace_period')):
            value = start.get(key, spec.get(key))
            if value is not None:
                start_spec[field] = parse_duration(value)
        start_spec = {k: v for k, v in start_spec.items() if v is not None}

        config = self._parse_mapping(spec.get('environment'))
        config.update(self._parse_mapping(spec.get('config')))

        descriptor = {
            'id': name,
            'dependencies': self._parse_dependencies(spec.get('depends_on', spec.get('dependsOn'))),
            'start': start_spec,
            'config': config,
            'config_files': spec.get('config_files') or {},
            'outputs': {k: self._to_str(v) for k, v in (spec.get('outputs') or {}).items()},
            'restart_policy': self._parse_restart(spec),
            'labels': {k: str(v) for k, v in self._parse_mapping(spec.get('labels')).items()},
        }
        health = spec.get('healthcheck', spec.get('healthCheck'))
        if health is not None:
            parsed = self._parse_health_check(health)
            if parsed is not None:
                descriptor['health_check'] = parsed
        return descriptor

    @staticmethod
    def _parse_dependencies(value: Any) -> Dict[str, str]:
        if not value:
            return {}
        if isinstance(value, str):
            return {value: DependencyCondition.HEALTHY.value}
        if isinstance(value, list):
            return {dep: DependencyCondition.HEALTHY.value for dep in value}
        if isinstance(value, dict):
            deps = {}
            for dep, options in value.items():
                condition = (options or {}).get('condition', DependencyCondition.HEALTHY.value)
                if condition == "service_completed_successfully":
                    raise ManifestError(f"Dependency condition '{condition}' is not supported")
                deps[dep] = condition
            return deps
        raise ManifestError(f"Invalid dependencies: {value!r}")

    def _parse_mapping(self, value: Any) -> Dict[str, Any]:
        """
        Reads ``K=V`` lists and mappings. ``{ref: svc.key}`` values are kept
        as output references.
        """
        if not value:
            return {}
        if isinstance(value, list):
            result = {}
            for item in value:
                if '=' in item:
                    k, v = item.split('=', 1)
                    result[k] = v
                else:
                    result[item] = ""
            return result
        if isinstance(value, dict):
            result = {}
            for k, v in value.items():
                if isinstance(v, dict):
                    if set(v) != {'ref'}:
                        raise ManifestError(f"Value of '{k}' must be a literal or {{ref: service.key}}")
                    result[str(k)] = {'ref': v['ref']}
                else:
                    result[str(k)] = v
            return result
        raise ManifestError(f"Expected a list or mapping, got {value!r}")

    @staticmethod
    def _parse_ports(value: Any) -> Dict[int, Optional[int]]:
        """
        Parses ``"host:container"``, ``"container"``, ``"ip:host:container"``
        (each optionally ``/proto``), ``{target, published}`` entries, or a
        ``{container: host}`` mapping.
        """
        ports: Dict[int, Optional[int]] = {}
        if not value:
            return ports
        if isinstance(value, dict):
            for container, host in value.items():
                ports[int(container)] = int(host) if host is not None else None
            return ports
        for p in value:
            if isinstance(p, int):
                ports[p] = None
            elif isinstance(p, str):
                parts = p.split('/', 1)[0].split(':')
                if len(parts) == 1:
                    ports[int(parts[0])] = None
                elif len(parts) in (2, 3):
                    host = parts[-2]
                    ports[int(parts[-1])] = int(host) if host else None
                else:
                    raise ManifestError(f"Invalid port mapping: {p!r}")
            elif isinstance(p, dict):
                published = p.get('published')
                ports[int(p['target'])] = int(published) if published is not None else None
            else:
                raise ManifestError(f"Invalid port mapping: {p!r}")
        return ports

    def _parse_health_check(self, spec: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(spec, dict):
            raise ManifestError(f"Invalid health check: {spec!r}")
        if spec.get('disable'):
            return None

        health: Dict[str, Any] = {}
        test = spec.get('test')
        probe = spec.get('probe')
        if isinstance(test, str):
            health['test'] = ["CMD-SHELL", test]
        elif isinstance(test, list):
            health['test'] = [str(t) for t in test]
        if isinstance(probe, dict):
            command = probe.get('command', probe.get('exec'))
            if isinstance(command, str):
                health['test'] = ["CMD-SHELL", command]
            elif isinstance(command, list):
                health['test'] = ["CMD"] + [str(c) for c in command]
            tcp = probe.get('tcp', probe.get('tcpPort', probe.get('tcp_port')))
            if tcp is not None:
                health['tcp_port'] = int(tcp)
        elif isinstance(probe, str):
            health['test'] = ["CMD-SHELL", probe]

        tcp_port = spec.get('tcp_port', spec.get('tcpPort'))
        if tcp_port is not None:
            health['tcp_port'] = int(tcp_port)

        durations = {
            'interval': ('interval', 'intervalSeconds'),
            'timeout': ('timeout', 'timeoutSeconds'),
            'start_period': ('start_period', 'startPeriodSeconds'),
        }
        for field, keys in durations.items():
            for key in keys:
                if spec.get(key) is not None:
                    health[field] = parse_duration(spec[key])

        counts = {
            'success_threshold': ('success_threshold', 'successThreshold'),
            'failure_threshold': ('retries', 'failure_threshold', 'failureThreshold'),
        }
        for field, keys in counts.items():
            for key in keys:
                if spec.get(key) is not None:
                    health[field] = int(spec[key])
        return health

    def _parse_restart(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merges ``restart``, ``deploy.restart_policy`` and an explicit
        ``restart_policy`` block, later ones winning.
        """
        policy: Dict[str, Any] = {}

        restart = spec.get('restart')
        if restart is False:
            # YAML 1.1 reads a bare `no` as a boolean
            restart = "no"
        if restart is not None:
            condition, _, count = str(restart).partition(':')
            policy['condition'] = condition
            if count:
                policy['max_retries'] = int(count)

        deploy_policy = (spec.get('deploy') or {}).get('restart_policy') or {}
        if 'condition' in deploy_policy:
            condition = deploy_policy['condition']
            if condition not in _DEPLOY_CONDITIONS:
                raise ManifestError(f"Invalid restart condition: {condition!r}")
            policy['condition'] = _DEPLOY_CONDITIONS[condition]
        if deploy_policy.get('max_attempts') is not None:
            policy['max_retries'] = int(deploy_policy['max_attempts'])
        if deploy_policy.get('delay') is not None:
            policy['backoff_base'] = parse_duration(deploy_policy['delay'])

        explicit = spec.get('restart_policy', spec.get('restartPolicy')) or {}
        for key, value in explicit.items():
            field = _snake(key)
            if field in ('backoff_base', 'backoff_cap', 'jitter'):
                value = parse_duration(value)
            if field == 'condition' and value is False:
                value = "no"
            policy[field] = value
        return policy

    @staticmethod
    def _to_command(value: Any) -> Optional[List[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            return shlex.split(value)
        return [str(v) for v in value]

    @staticmethod
    def _to_str(value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)

    def _to_list(self, val: Any) -> Optional[List[str]]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings, or None when unset.
        """
        if val is None:
            return None
        if isinstance(val, str):
            return [val]
        return list(val)
