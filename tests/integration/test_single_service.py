import asyncio
import os
import sys

from stackup.MANAGERS.config_propagator import RenderedConfig
from stackup.MODELS.orchestration_config import OrchestratorSettings
from stackup.MODELS.service_descriptor import HealthCheck, ServiceDescriptor, StartSpec
from stackup.RUNNERS.runtime import ProcessRuntime

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def test_single_service_lifecycle(tmp_path):
    # Setup
    descriptor = ServiceDescriptor(
        id="test-service",
        start=StartSpec(command=[sys.executable, DUMMY], stop_grace_period=5),
        outputs={"pid_host": "${HOST}"},
    )
    runtime = ProcessRuntime(OrchestratorSettings(), base_dir=str(tmp_path))
    config = RenderedConfig(environment={"DEBUG": "true", "PYTHONUNBUFFERED": "1", "DUMMY_DURATION": "30"})

    async def scenario():
        handle = await runtime.launch(descriptor, config)
        await asyncio.sleep(0.5)
        probe = await runtime.probe(descriptor, handle)
        running_code = runtime.exit_code(handle)
        context = runtime.output_context(descriptor, handle)
        await runtime.terminate(descriptor, handle)
        return handle, probe, running_code, context, runtime.exit_code(handle)

    handle, probe, running_code, context, stopped_code = asyncio.run(scenario())
    assert handle.pid > 0
    assert probe.success
    assert running_code is None
    assert context["HOST"] == "127.0.0.1"
    assert context["SERVICE_ID"] == "test-service"
    assert stopped_code is not None

    # Check logs
    log_file = tmp_path / ".stackup" / "logs" / "test-service.log"
    assert log_file.exists()
    content = log_file.read_text()
    assert "Dummy service starting..." in content
    assert "DEBUG: true" in content


def test_command_health_check(tmp_path):
    descriptor = ServiceDescriptor(
        id="checked",
        start=StartSpec(command=[sys.executable, DUMMY]),
        health_check=HealthCheck(test=["CMD", sys.executable, "-c", "import sys; sys.exit(0)"], timeout=10),
    )
    failing = descriptor.model_copy(update={
        "health_check": HealthCheck(test=["CMD-SHELL", "exit 3"], timeout=10),
    })
    runtime = ProcessRuntime(OrchestratorSettings(), base_dir=str(tmp_path))

    async def scenario():
        handle = await runtime.launch(descriptor, RenderedConfig(environment={"DUMMY_DURATION": "30"}))
        try:
            return await runtime.probe(descriptor, handle), await runtime.probe(failing, handle)
        finally:
            await runtime.terminate(descriptor, handle)

    healthy, unhealthy = asyncio.run(scenario())
    assert healthy.success
    assert not unhealthy.success
    assert "3" in unhealthy.error


def test_config_files_are_written(tmp_path):
    descriptor = ServiceDescriptor(id="writer", start=StartSpec(command=[sys.executable, DUMMY]))
    runtime = ProcessRuntime(OrchestratorSettings(), base_dir=str(tmp_path))
    config = RenderedConfig(
        environment={"PYTHONUNBUFFERED": "1", "DUMMY_DURATION": "30"},
        files={"app.conf": "endpoint=127.0.0.1:2379\n"},
    )

    async def scenario():
        handle = await runtime.launch(descriptor, config)
        await asyncio.sleep(0.5)
        await runtime.terminate(descriptor, handle)
        return handle

    handle = asyncio.run(scenario())
    written = tmp_path / ".stackup" / "config" / "writer" / "app.conf"
    assert written.read_text() == "endpoint=127.0.0.1:2379\n"
    assert handle.environment["STACKUP_CONFIG_DIR"] == str(written.parent)
    assert "CONFIG app.conf: endpoint=127.0.0.1:2379" in (tmp_path / ".stackup" / "logs" / "writer.log").read_text()
