import os
import re
import sys

import pytest
import yaml
from click.testing import CliRunner

from stackup.CLI.main import cli

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


@pytest.fixture
def manifest(tmp_path):
    def write(services, **extra):
        path = tmp_path / "stackup.yml"
        with open(path, 'w') as f:
            yaml.dump({'services': services, **extra}, f)
        return str(path)
    return write


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'dependency order' in result.output
    for command in ('validate', 'plan', 'up', 'ps', 'config'):
        assert command in result.output


def test_cli_up_no_file():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'up'])
    assert result.exit_code == 1
    assert 'Error: non_existent.yml not found.' in result.output


def test_cli_up_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['up', '--help'])
    assert result.exit_code == 0
    assert '--keep-going' in result.output
    assert '--max-parallel' in result.output


def test_validate_and_plan(manifest):
    path = manifest({'etcd': {}, 'minio': {}, 'milvus': {'depends_on': ['etcd', 'minio']}})
    runner = CliRunner()

    result = runner.invoke(cli, ['-f', path, 'validate'])
    assert result.exit_code == 0
    assert 'OK: 3 services in 2 stages' in result.output

    result = runner.invoke(cli, ['-f', path, 'plan'])
    assert result.exit_code == 0
    assert result.output.splitlines() == ['Stage 1: etcd, minio', 'Stage 2: milvus']


def test_validate_cycle(manifest):
    path = manifest({'a': {'depends_on': ['b']}, 'b': {'depends_on': ['a']}})
    result = CliRunner().invoke(cli, ['-f', path, 'validate'])
    assert result.exit_code == 1
    assert 'Circular dependency detected' in result.output


def test_validate_malformed(manifest):
    path = manifest({'api': {'ports': ['1:2:3:4']}})
    result = CliRunner().invoke(cli, ['-f', path, 'validate'])
    assert result.exit_code == 1
    assert 'Error:' in result.output


def test_config_shows_descriptor(manifest):
    path = manifest({
        'etcd': {'outputs': {'endpoint': '${HOST}:${PORT}'}},
        'milvus': {'depends_on': ['etcd'], 'config': {'ETCD': {'ref': 'etcd.endpoint'}}},
    })
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', path, 'config', 'milvus'])
    assert result.exit_code == 0
    shown = yaml.safe_load(result.output)
    assert shown['id'] == 'milvus'
    assert shown['config'] == {'ETCD': {'ref': 'etcd.endpoint'}}
    assert shown['dependencies'] == {'etcd': 'service_healthy'}

    result = runner.invoke(cli, ['-f', path, 'config', 'nope'])
    assert result.exit_code == 1


def test_ps_without_status(manifest):
    path = manifest({'api': {}})
    result = CliRunner().invoke(cli, ['-f', path, 'ps'])
    assert result.exit_code == 0
    assert 'No status recorded yet.' in result.output


def test_up_runs_until_services_finish(manifest):
    path = manifest(
        {
            'job': {
                'command': [sys.executable, DUMMY],
                'environment': {'DUMMY_DURATION': '1'},
                'restart': 'no',
            },
        },
        **{'x-stackup': {'liveness_interval': 0.1}},
    )
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', path, 'up'])
    assert result.exit_code == 0, result.output
    assert re.search(r'job\s+ready', result.output)
    assert 'Result: success' in result.output

    result = runner.invoke(cli, ['-f', path, 'ps'])
    assert result.exit_code == 0
    assert 'stopped' in result.output
    assert 'Result: success' in result.output


def test_up_reports_partial_failure(manifest):
    path = manifest({
        'broken': {
            'command': [sys.executable, '-c', 'import sys; sys.exit(4)'],
            'restart': 'no',
            'healthcheck': {'test': ['CMD-SHELL', 'exit 1'], 'interval': 0.1, 'retries': 1},
        },
        'web': {'command': [sys.executable, DUMMY], 'depends_on': ['broken']},
    })
    result = CliRunner().invoke(cli, ['-f', path, 'up', '--keep-going'])
    assert result.exit_code == 1, result.output
    assert 'failed  broken' in result.output
    assert 'blocked web' in result.output


def test_up_aborts_on_cycle(manifest):
    path = manifest({'a': {'depends_on': ['b']}, 'b': {'depends_on': ['a']}})
    result = CliRunner().invoke(cli, ['-f', path, 'up'])
    assert result.exit_code == 2
    assert 'Result: aborted' in result.output
