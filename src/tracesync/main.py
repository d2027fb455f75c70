"""
Main entry point for tracesync.
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
import trio
from loguru import logger

from .animation.scheduler import TrioScheduler
from .animation.sequencer import AnimationState, SequencerPhase
from .animation.speed import NodeSpeedTable
from .api.client import EngineClient
from .config import TraceSyncConfig, load_config
from .logs import setup_logging
from .session import DebugSession
from .workflow.models import WorkflowGraph
from .workflow.order import NodeOrderResolver


@click.group()
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.pass_context
def cli(ctx, debug: bool, config: Optional[str]):
    """tracesync - replay workflow runs one node at a time"""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    ctx.obj['config'] = config


def _load(ctx) -> TraceSyncConfig:
    config = load_config(ctx.obj.get('config'))
    if ctx.obj.get('debug'):
        config.debug = True
        config.logging.level = "DEBUG"
    setup_logging(config.logging, debug=config.debug)
    return config


def _load_graph(graph_file: str) -> WorkflowGraph:
    try:
        graph = WorkflowGraph.load(graph_file)
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Failed to load graph {graph_file}: {e}")
        sys.exit(1)

    for issue in graph.validate_graph():
        logger.warning(issue)
    return graph


@cli.command()
@click.argument('graph_file', type=click.Path(exists=True))
@click.option('--target', '-t', help='Stop the order at this node (partial test)')
@click.pass_context
def order(ctx, graph_file: str, target: Optional[str]):
    """Print the replay order of a workflow graph"""
    config = _load(ctx)
    graph = _load_graph(graph_file)
    speeds = NodeSpeedTable.from_config(config.animation)

    nodes = NodeOrderResolver().resolve_graph(graph, target)
    if not nodes:
        click.echo("Nothing to animate")
        return

    for index, node in enumerate(nodes, start=1):
        speed = speeds.classify(node.node_type, node.category)
        click.echo(f"{index:>3}. {node.id} ({node.node_type or '?'}) [{speed.value}]")


@cli.command()
@click.argument('workflow_id')
@click.argument('graph_file', type=click.Path(exists=True))
@click.option('--node', '-n', 'node_id', help='Test up to and including this node')
@click.option('--input', '-i', 'input_json', help='Run input as JSON')
@click.pass_context
def watch(ctx, workflow_id: str, graph_file: str, node_id: Optional[str], input_json: Optional[str]):
    """Start a run (or node test) and follow it live"""
    config = _load(ctx)
    graph = _load_graph(graph_file)

    try:
        payload = json.loads(input_json) if input_json else {}
    except json.JSONDecodeError as e:
        logger.error(f"Invalid --input JSON: {e}")
        sys.exit(1)

    try:
        session = trio.run(_watch, config, graph, workflow_id, node_id, payload)
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return

    _print_steps(session)
    if session.monitor.error:
        sys.exit(1)


async def _watch(
    config: TraceSyncConfig,
    graph: WorkflowGraph,
    workflow_id: str,
    node_id: Optional[str],
    payload: Any,
) -> DebugSession:
    async with EngineClient.from_config(config.engine) as engine:
        async with trio.open_nursery() as nursery:
            session = DebugSession(TrioScheduler(nursery), engine=engine, config=config, graph=graph)
            session.sequencer.subscribe(_log_state)

            finished = trio.Event()
            session.on_run_finished(lambda monitor: finished.set())

            if node_id:
                await session.test_node(nursery, workflow_id, node_id, payload)
            else:
                await session.run_workflow(nursery, workflow_id, payload)

            if session.is_executing:
                await finished.wait()
            session.close()
            nursery.cancel_scope.cancel()
    return session


def _log_state(state: AnimationState) -> None:
    if state.phase == SequencerPhase.DONE:
        logger.info("Replay finished")
    elif state.current_animated_node_id is not None:
        suffix = " (waiting for events)" if state.waiting_for_event else ""
        logger.info(
            f"[{state.current_index}/{len(state.execution_order)}] "
            f"{state.current_animated_node_id}{suffix}"
        )


def _print_steps(session: DebugSession) -> None:
    monitor = session.monitor
    click.echo(f"\nRun {monitor.run_id}: {monitor.status.value if monitor.status else 'unknown'}")
    if monitor.error:
        click.echo(f"Error: {monitor.error}")

    for step in session.steps():
        status = step.status.value if step.status else "-"
        line = f"  {step.node_id:<24} {status:<10}"
        if step.duration:
            line += f" {step.duration:>8.0f}ms"
        if step.debug_info is not None:
            line += f"  {step.debug_info.output_preview[:60]}"
        click.echo(line)


@cli.command()
@click.option('--output', '-o', default='./tracesync.yaml', help='Output configuration file')
def init_config(output: str):
    """Generate initial configuration file"""
    output_path = Path(output)

    if output_path.exists():
        if not click.confirm(f"File {output} already exists. Overwrite?"):
            return

    TraceSyncConfig().save_to_yaml(output_path)
    logger.success(f"Configuration file created: {output}")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
def validate_config(config: Optional[str]):
    """Validate configuration file"""
    try:
        if config:
            cfg = TraceSyncConfig.load_from_yaml(config)
        else:
            cfg = TraceSyncConfig()

        logger.success("Configuration is valid")

        click.echo("\nConfiguration Summary:")
        click.echo(f"Engine: {cfg.engine.base_url}")
        click.echo(f"Event stream: {cfg.engine.events_path}")
        click.echo(f"Polling: {'every %dms' % cfg.polling.interval_ms if cfg.polling.enabled else 'disabled'}")
        click.echo(
            f"Durations: fast {cfg.animation.fast_duration_ms}ms, "
            f"default {cfg.animation.default_duration_ms}ms, "
            f"slow fallback {cfg.animation.slow_fallback_duration_ms}ms"
        )
        click.echo(f"Log level: {cfg.logging.level}")

    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)


@cli.command()
def version():
    """Show version information"""
    from . import __version__
    click.echo(f"tracesync v{__version__}")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == '__main__':
    main()
