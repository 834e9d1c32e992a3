import random
import string

import pytest
import yaml

from stackup.errors import ConfigurationError, ManifestError
from stackup.PARSERS.manifest_parser import ManifestParser
from stackup.RUNNERS.dependency_resolver import DependencyResolver
from stackup.UTILS.string_interpolation import EnvironmentInterpolator
from stackup.UTILS.units import parse_duration

SERVICE_KEYS = [
    'command', 'entrypoint', 'environment', 'config', 'depends_on', 'ports',
    'healthcheck', 'restart', 'restart_policy', 'outputs', 'config_files',
    'start', 'deploy', 'labels', 'stop_grace_period', 'mem_limit',
]


def random_string(rng, length):
    return ''.join(rng.choice(string.printable) for _ in range(length))


def random_value(rng, depth=0):
    choice = rng.randint(0, 6 if depth < 2 else 3)
    if choice == 0:
        return rng.randint(-5, 70000)
    if choice == 1:
        return random_string(rng, rng.randint(0, 12))
    if choice == 2:
        return rng.choice([None, True, False, "no", "on-failure:3", "${X}", "10s"])
    if choice == 3:
        return rng.choice(["8080", "1:2", "a:b", "127.0.0.1:80:80/tcp", {"ref": "db.url"}])
    if choice == 4:
        return [random_value(rng, depth + 1) for _ in range(rng.randint(0, 3))]
    return {rng.choice(SERVICE_KEYS + ['test', 'ref', 'condition']): random_value(rng, depth + 1)
            for _ in range(rng.randint(0, 3))}


def test_fuzz_manifest_parser_text():
    rng = random.Random(1234)
    parser = ManifestParser(context={})
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ManifestError:
            pass


def test_fuzz_manifest_parser_structure():
    """Random service entries either parse or fail with a configuration error."""
    rng = random.Random(4321)
    parser = ManifestParser(context={})
    resolver = DependencyResolver()
    for _ in range(300):
        services = {
            f"svc{i}": {rng.choice(SERVICE_KEYS): random_value(rng) for _ in range(rng.randint(0, 4))}
            for i in range(rng.randint(1, 4))
        }
        content = yaml.safe_dump({'services': services})
        try:
            config = parser.parse_from_string(content)
            resolver.resolve(config)
        except ConfigurationError:
            pass


def test_fuzz_interpolation():
    rng = random.Random(99)
    alphabet = string.ascii_letters + "${}:-?_ "
    for _ in range(500):
        text = ''.join(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))
        try:
            EnvironmentInterpolator.interpolate(text, {"A": "1"}, strict=False)
        except ConfigurationError:
            pass


def test_fuzz_durations():
    rng = random.Random(7)
    for _ in range(200):
        text = random_string(rng, rng.randint(0, 10))
        try:
            assert isinstance(parse_duration(text), float)
        except ValueError:
            pass


def test_edge_cases_parsers():
    parser = ManifestParser(context={})

    # Empty string
    assert parser.parse_from_string("").services == {}

    # Only whitespace and comments
    assert parser.parse_from_string("   \n\t# nothing\n").services == {}

    # Very long value
    config = parser.parse_from_string("services:\n  api:\n    command: echo " + "a" * 10000)
    assert len(config.services['api'].start.command[1]) == 10000

    # Deeply nested junk under a service
    nested = {'services': {'api': {'labels': {'a': 'x'}, 'deploy': {'resources': {'limits': {}}}}}}
    assert 'api' in parser.parse_from_string(yaml.safe_dump(nested)).services

    with pytest.raises(ManifestError):
        parser.parse_from_string("- just\n- a list\n")
    with pytest.raises(ManifestError):
        parser.parse_from_string("services: 12\n")
    with pytest.raises(ManifestError):
        parser.parse_from_string("x-stackup: [1, 2]\n")
