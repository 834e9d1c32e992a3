import os

import pytest
import yaml

from stackup.errors import ManifestError
from stackup.MODELS.orchestration_config import FailureMode
from stackup.MODELS.service_descriptor import DependencyCondition, OutputRef, RestartCondition
from stackup.PARSERS.manifest_parser import ManifestParser
from stackup.RUNNERS.dependency_resolver import DependencyResolver

EXAMPLES = os.path.join(os.path.dirname(__file__), "..", "..", "examples")


def test_parse_compose_style(tmp_path):
    compose_content = {
        'name': 'demo',
        'services': {
            'web': {
                'image': 'nginx:latest',
                'command': 'python -m http.server 8080',
                'ports': ['8080:80', '9000', '127.0.0.1:5432:5432/tcp'],
                'environment': {
                    'DEBUG': True,
                    'WORKERS': 4,
                },
                'restart': 'on-failure:5',
                'depends_on': ['db'],
                'mem_limit': '512m',
            },
            'db': {
                'command': ['postgres', '-D', 'data'],
                'environment': ['POSTGRES_USER=app', 'EMPTY'],
                'healthcheck': {
                    'test': ['CMD', 'pg_isready'],
                    'interval': '1m30s',
                    'timeout': '500ms',
                    'retries': 5,
                    'start_period': 20,
                },
                'restart': 'always',
            },
        },
    }

    compose_file = tmp_path / "stackup.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)

    parser = ManifestParser(context={})
    config = parser.parse(str(compose_file))

    web = config.services['web']
    assert web.start.command == ['python', '-m', 'http.server', '8080']
    assert web.start.ports == {80: 8080, 9000: None, 5432: 5432}
    assert web.config == {'DEBUG': 'true', 'WORKERS': '4'}
    assert web.dependencies == {'db': DependencyCondition.HEALTHY}
    assert web.restart_policy.condition == RestartCondition.ON_FAILURE
    assert web.restart_policy.max_retries == 5
    assert web.start.memory_limit == '512m'
    assert web.health_check is None

    db = config.services['db']
    assert db.config == {'POSTGRES_USER': 'app', 'EMPTY': ''}
    assert db.health_check.test == ['CMD', 'pg_isready']
    assert db.health_check.interval == 90.0
    assert db.health_check.timeout == 0.5
    assert db.health_check.failure_threshold == 5
    assert db.health_check.start_period == 20.0
    assert db.restart_policy.condition == RestartCondition.ALWAYS

    assert config.settings.project_name == 'demo'


def test_parse_declarative_list():
    content = """
services:
  - id: etcd
    start:
      command: etcd --data-dir /tmp/etcd
      ports: ["2379"]
    outputs:
      endpoint: "${HOST}:${PORT}"
    healthCheck:
      probe: {tcp: 2379}
      intervalSeconds: 2
      timeoutSeconds: 1
      successThreshold: 2
      failureThreshold: 4
      startPeriodSeconds: 30
  - id: milvus
    dependsOn: [etcd]
    start:
      command: ["milvus", "run", "standalone"]
      resources: {cpus: 2, memory: 2g}
    config:
      ETCD_ENDPOINTS: {ref: etcd.endpoint}
      LOG_LEVEL: info
    restartPolicy:
      maxRetries: 7
      backoffBase: 500ms
      backoffMultiplier: 3
      backoffCap: 1m
"""
    config = ManifestParser(context={}).parse_from_string(content, base_dir="/srv/vectors")

    etcd = config.services['etcd']
    assert etcd.start.command == ['etcd', '--data-dir', '/tmp/etcd']
    assert etcd.start.ports == {2379: None}
    assert etcd.outputs == {'endpoint': '${HOST}:${PORT}'}
    assert etcd.health_check.tcp_port == 2379
    assert etcd.health_check.test == []
    assert etcd.health_check.success_threshold == 2
    assert etcd.health_check.failure_threshold == 4
    assert etcd.health_check.start_period == 30.0

    milvus = config.services['milvus']
    assert milvus.config['ETCD_ENDPOINTS'] == OutputRef(ref='etcd.endpoint')
    assert milvus.config['LOG_LEVEL'] == 'info'
    assert milvus.start.cpu_limit == 2.0
    assert milvus.start.memory_limit == '2g'
    assert milvus.restart_policy.max_retries == 7
    assert milvus.restart_policy.backoff_base == 0.5
    assert milvus.restart_policy.backoff_multiplier == 3
    assert milvus.restart_policy.backoff_cap == 60.0

    assert config.settings.project_name == 'vectors'


def test_interpolation_skips_outputs():
    content = """
services:
  api:
    command: "serve --port ${API_PORT:-8000}"
    environment:
      TOKEN: ${TOKEN}
      LITERAL: $$HOME
    outputs:
      url: "http://${HOST}:${PORT}"
"""
    config = ManifestParser(context={'TOKEN': 's3cret'}).parse_from_string(content)
    api = config.services['api']
    assert api.start.command == ['serve', '--port', '8000']
    assert api.config == {'TOKEN': 's3cret', 'LITERAL': '$HOME'}
    assert api.outputs == {'url': 'http://${HOST}:${PORT}'}


def test_unset_variable_becomes_empty():
    config = ManifestParser(context={}).parse_from_string(
        "services:\n  api:\n    environment:\n      KEY: \"x${MISSING}y\"\n"
    )
    assert config.services['api'].config == {'KEY': 'xy'}


def test_required_variable_raises():
    with pytest.raises(ManifestError):
        ManifestParser(context={}).parse_from_string(
            "services:\n  api:\n    environment:\n      KEY: ${KEY:?KEY must be set}\n"
        )


def test_dotenv_next_to_manifest(tmp_path, monkeypatch):
    monkeypatch.delenv('APP_PORT', raising=False)
    (tmp_path / ".env").write_text("APP_PORT=9100\n")
    manifest = tmp_path / "stackup.yml"
    manifest.write_text("services:\n  api:\n    ports: ['${APP_PORT}:80']\n")

    config = ManifestParser().parse(str(manifest))
    assert config.services['api'].start.ports == {80: 9100}


def test_depends_on_conditions():
    content = """
services:
  db: {}
  migrate:
    depends_on:
      db: {condition: service_started}
  api:
    depends_on:
      db:
        condition: service_healthy
      migrate: {}
"""
    services = ManifestParser(context={}).parse_from_string(content).services
    assert services['migrate'].dependencies == {'db': DependencyCondition.STARTED}
    assert services['api'].dependencies == {
        'db': DependencyCondition.HEALTHY,
        'migrate': DependencyCondition.HEALTHY,
    }


def test_restart_variants():
    content = """
services:
  bare_no:
    restart: no
  quoted:
    restart: "unless-stopped"
  swarm:
    deploy:
      restart_policy: {condition: any, max_attempts: 9, delay: 2s}
"""
    services = ManifestParser(context={}).parse_from_string(content).services
    assert services['bare_no'].restart_policy.condition == RestartCondition.NO
    assert services['quoted'].restart_policy.condition == RestartCondition.UNLESS_STOPPED
    swarm = services['swarm'].restart_policy
    assert swarm.condition == RestartCondition.ALWAYS
    assert swarm.max_retries == 9
    assert swarm.backoff_base == 2.0


def test_healthcheck_variants():
    content = """
services:
  shell:
    healthcheck:
      test: curl -f http://localhost/
  disabled:
    healthcheck:
      disable: true
  both:
    healthCheck:
      probe: {command: [pg_isready, -h, localhost], tcp: 5432}
"""
    services = ManifestParser(context={}).parse_from_string(content).services
    assert services['shell'].health_check.test == ['CMD-SHELL', 'curl -f http://localhost/']
    assert services['disabled'].health_check is None
    both = services['both'].health_check
    assert both.test == ['CMD', 'pg_isready', '-h', 'localhost']
    assert both.tcp_port == 5432


def test_settings_block_and_environment():
    content = """
x-stackup:
  failure-mode: continue
  max_parallel_starts: 2
services:
  api: {}
"""
    config = ManifestParser(context={'STACKUP_MAX_PARALLEL_STARTS': '4'}).parse_from_string(content)
    assert config.settings.failure_mode == FailureMode.CONTINUE
    assert config.settings.max_parallel_starts == 4


@pytest.mark.parametrize("content", [
    "services: [1, 2]",
    "services:\n  api:\n    ports: ['1:2:3:4']\n",
    "services:\n  api:\n    depends_on: 5\n",
    "services:\n  'bad id!': {}\n",
    "services:\n  api:\n    config:\n      K: {reference: db.x}\n",
    "services:\n  api:\n    healthcheck:\n      interval: soon\n",
    "- just\n- a list\n",
    "services: {api: [unclosed",
])
def test_malformed_manifests(content):
    with pytest.raises(ManifestError):
        ManifestParser(context={}).parse_from_string(content)


def test_missing_file():
    with pytest.raises(ManifestError):
        ManifestParser(context={}).parse("non_existent_file_12345.yml")


def test_empty_manifest():
    config = ManifestParser(context={}).parse_from_string("")
    assert config.services == {}


def test_example_stack_manifest():
    parser = ManifestParser(context={'MINIO_ACCESS_KEY': 'ak'})
    config = parser.parse(os.path.join(EXAMPLES, "milvus-stack.yml"))
    plan = DependencyResolver().resolve(config)

    assert config.settings.project_name == 'milvus'
    assert [sorted(stage) for stage in plan.stages] == [['etcd', 'minio'], ['milvus']]
    milvus = config.services['milvus']
    assert milvus.config['MINIO_ACCESS_KEY_ID'] == OutputRef(ref='minio.accessKey')
    assert config.services['minio'].config['MINIO_ROOT_USER'] == 'ak'
    assert config.services['etcd'].outputs['endpoint'] == '${HOST}:${PORT_2379}'
    assert config.services['etcd'].start.ports == {2379: 2379}
