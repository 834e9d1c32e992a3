import asyncio
import sys
import time

from stackup.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackup.MODELS.orchestration_config import OrchestrationConfig, OrchestratorSettings
from stackup.MODELS.service_descriptor import ServiceDescriptor, StartSpec
from stackup.MODELS.service_state import ServiceState
from stackup.PARSERS.manifest_parser import ManifestParser
from stackup.RUNNERS.dependency_resolver import DependencyResolver


def test_stress_orchestration(tmp_path):
    """
    Stress test by orchestrating 30 real processes in three stages.
    """
    services = []
    for i in range(30):
        deps = [f"service_{i - 10}"] if i >= 10 else []
        services.append(ServiceDescriptor(
            id=f"service_{i}",
            dependencies=deps,
            start=StartSpec(command=[sys.executable, "-c", "import time; time.sleep(30)"], stop_grace_period=5),
        ))

    settings = OrchestratorSettings(liveness_interval=0.5, write_status_file=False)
    config = OrchestrationConfig.from_descriptors(services, settings)

    async def scenario():
        orchestrator = ServiceOrchestrator(config=config, base_dir=str(tmp_path))
        start_time = time.time()
        result = await orchestrator.up()
        elapsed = time.time() - start_time
        status = orchestrator.ps()
        await orchestrator.down()
        return orchestrator, result, status, elapsed

    orchestrator, result, status, elapsed = asyncio.run(scenario())

    print(f"Started 30 services in {elapsed:.2f}s")
    assert result.ok
    assert len(orchestrator.plan) == 3
    assert len(status) == 30
    assert all(s.state == ServiceState.READY for s in status.values())
    assert all(s.state == ServiceState.STOPPED for s in orchestrator.ps().values())


def test_large_config_parsing():
    parser = ManifestParser(context={})

    # Generate a large manifest
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    command: run {i}\n"
        if i:
            content += f"    depends_on: [service_{i // 2}]\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"

    start_time = time.time()
    config = parser.parse_from_string(content)
    plan = DependencyResolver().resolve(config)
    end_time = time.time()

    assert len(config.services) == 1000
    assert len(plan) == 11
    assert end_time - start_time < 5.0


def test_deep_chain_resolution():
    services = {
        f"s{i}": ServiceDescriptor(id=f"s{i}", dependencies=[f"s{i - 1}"] if i else [])
        for i in range(300)
    }
    plan = DependencyResolver().resolve(services)
    assert len(plan) == 300
    assert plan.start_order()[:3] == ["s0", "s1", "s2"]
