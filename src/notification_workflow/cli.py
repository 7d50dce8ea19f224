"""
Notification Workflow CLI
"""
import asyncio
import json
import logging

import click

from .config import EngineSettings
from .core import WorkflowEngine
from .exceptions import WorkflowEngineError
from .integrations import ExecutorRegistry


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='.env file to load')
@click.pass_context
def cli(ctx, log_level, env_file):
    """Notification Workflow CLI"""
    settings = EngineSettings.from_env(dotenv_path=env_file)
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--templates', 'templates_file', type=click.Path(exists=True, dir_okay=False),
              help='Node template catalog to load first')
@click.pass_obj
def validate(settings, workflow_file, templates_file):
    """Build a workflow definition in memory and print its validation report"""
    async def _validate():
        engine = WorkflowEngine.in_memory(settings=settings)
        if templates_file:
            await engine.templates.load(templates_file)

        definition = engine.parser.parse(workflow_file)
        definition['activate'] = False
        workflow = await engine.load_workflow(definition)
        return await engine.graphs.validate(workflow.id)

    try:
        report = asyncio.run(_validate())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    click.echo(json.dumps(report.to_dict(), indent=2))
    if not report.ok:
        raise SystemExit(1)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--payload', default='{}', help='Trigger payload (JSON string)')
@click.option('--key', 'idempotency_key', default='cli-run', help='Idempotency key')
@click.option('--templates', 'templates_file', type=click.Path(exists=True, dir_okay=False),
              help='Node template catalog to load first')
@click.pass_obj
def run(settings, workflow_file, payload, idempotency_key, templates_file):
    """Build, activate and run a workflow once with logging executors"""
    async def _run():
        engine = WorkflowEngine.in_memory(
            settings=settings,
            executors=ExecutorRegistry.with_logging_executors()
        )
        if templates_file:
            await engine.templates.load(templates_file)

        workflow = await engine.load_workflow(workflow_file)
        if not workflow.is_active:
            workflow = await engine.graphs.activate(workflow.id)

        instance = await engine.submit(workflow.id, idempotency_key, payload, principal='cli')
        await engine.dispatcher.run_until_idle()
        instance = await engine.triggers.get(instance.id)
        logs = await engine.triggers.step_logs(instance.id)
        return instance, logs

    try:
        instance, logs = asyncio.run(_run())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    click.echo(json.dumps({
        "id": instance.id,
        "status": instance.status.value,
        "attempts": instance.attempts,
        "available_at": instance.available_at.isoformat(),
        "last_error": instance.last_error,
        "steps": [
            {"node_id": log.node_id, "attempt": log.attempt, "success": log.success}
            for log in logs
        ]
    }, indent=2))


@cli.command()
@click.option('--once', is_flag=True, help='Drain ready instances and exit')
@click.pass_obj
def dispatch(settings, once):
    """Run a dispatcher worker against DATABASE_URL"""
    async def _dispatch():
        engine = await WorkflowEngine.from_database(
            settings,
            executors=ExecutorRegistry.default()
        )
        try:
            if once:
                processed = await engine.dispatcher.run_until_idle()
                click.echo(f"Processed {processed} trigger instance(s)")
                return

            await engine.start()
            click.echo("Dispatcher running, press Ctrl+C to stop")
            while True:
                await asyncio.sleep(3600)
        finally:
            await engine.close()

    try:
        asyncio.run(_dispatch())
    except KeyboardInterrupt:
        click.echo("Dispatcher stopped")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
