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
Command Line Interface for stackup.
"""
import asyncio
import logging
import os
import signal

import click
import yaml

from ..errors import StackupError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.status_store import StatusStore
from ..MODELS.orchestration_config import FailureMode, OrchestratorSettings
from ..MODELS.service_state import RunOutcome, ServiceStatus
from ..PARSERS.manifest_parser import ManifestParser
from ..RUNNERS.dependency_resolver import DependencyResolver

EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.PARTIAL_FAILURE: 1,
    RunOutcome.ABORTED: 2,
}


@click.group()
@click.option('--file', '-f', default='stackup.yml', help='Manifest file path')
@click.option('--log-level', default='WARNING', envvar='STACKUP_LOG_LEVEL',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Log level')
@click.pass_context
def cli(ctx, file, log_level):
    """
    stackup - start interdependent services in dependency order.

    Resolves the dependency graph of a manifest, starts each stage once its
    dependencies are healthy and feeds their outputs into dependents.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['base_dir'] = os.path.dirname(os.path.abspath(file))


def _load(ctx):
    """
    Parses the manifest once per invocation, exiting with status 1 on error.
    """
    if 'config' not in ctx.obj:
        file = ctx.obj['file']
        if not os.path.exists(file):
            click.echo(f"Error: {file} not found.", err=True)
            ctx.exit(1)
        try:
            ctx.obj['config'] = ManifestParser().parse(file)
        except StackupError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(1)
    return ctx.obj['config']


@cli.command()
@click.pass_context
def validate(ctx):
    """Check the manifest and its dependency graph."""
    config = _load(ctx)
    try:
        plan = DependencyResolver().resolve(config)
    except StackupError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
    click.echo(f"OK: {len(config.services)} services in {len(plan)} stages")


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the startup stages."""
    config = _load(ctx)
    try:
        execution_plan = DependencyResolver().resolve(config)
    except StackupError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
    for index, stage in enumerate(execution_plan.stages, start=1):
        click.echo(f"Stage {index}: {', '.join(sorted(stage))}")


def _echo_transition(status: ServiceStatus) -> None:
    line = f"{status.service_id:15} {status.state.value:10}"
    if status.restart_count:
        line += f" restarts={status.restart_count}"
    if status.error:
        line += f" {status.error}"
    click.echo(line)


async def _run_foreground(orchestrator: ServiceOrchestrator):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except (NotImplementedError, RuntimeError):
            # No loop signal handlers off the main thread or on Windows
            break
    return await orchestrator.run()


@cli.command()
@click.option('--keep-going', is_flag=True, help='Keep starting services that do not depend on a failed one')
@click.option('--max-parallel', type=click.IntRange(min=0), default=None,
              help='Maximum number of services launching at once (0 for no limit)')
@click.pass_context
def up(ctx, keep_going, max_parallel):
    """Start services and supervise them until interrupted."""
    config = _load(ctx)
    settings = OrchestratorSettings.model_validate({
        **config.settings.model_dump(),
        **({'failure_mode': FailureMode.CONTINUE} if keep_going else {}),
        **({'max_parallel_starts': max_parallel} if max_parallel is not None else {}),
    })
    orchestrator = ServiceOrchestrator(config, base_dir=ctx.obj['base_dir'], settings=settings)
    orchestrator.add_listener(_echo_transition)

    click.echo("Running... Press Ctrl+C to stop.")
    result = asyncio.run(_run_foreground(orchestrator))

    click.echo(f"Result: {result.outcome.value}")
    for failure in result.failures:
        click.echo(f"  failed  {failure.service_id}: [{failure.kind.value}] {failure.message}")
    for service_id in result.blocked:
        click.echo(f"  blocked {service_id}")
    if result.error:
        click.echo(f"  {result.error}")
    ctx.exit(EXIT_CODES[result.outcome])


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status from the last run."""
    settings = _load(ctx).settings
    store = StatusStore(os.path.join(ctx.obj['base_dir'], settings.status_path))
    data = store.read()
    if data is None:
        click.echo("No status recorded yet.")
        return

    click.echo(f"{'SERVICE':15} {'STATE':10} {'RESTARTS':8} {'PID':8} ERROR")
    click.echo("-" * 60)
    for name, status in sorted(data.get('services', {}).items()):
        pid = status.get('pid') or '-'
        click.echo(
            f"{name:15} {status['state']:10} {status['restart_count']:<8} {pid!s:8} {status.get('error') or ''}"
        )
    result = data.get('result') or {}
    click.echo(f"Result: {result.get('outcome', 'unknown')}")


@cli.command()
@click.argument('service')
@click.pass_context
def config(ctx, service):
    """Show the resolved descriptor of a service."""
    services = _load(ctx).services
    if service not in services:
        click.echo(f"Error: unknown service '{service}'", err=True)
        ctx.exit(1)
    click.echo(yaml.safe_dump(services[service].model_dump(mode='json'), sort_keys=False), nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
