"""Main CLI entry point for the SeaweedFS service broker."""

import asyncio
import json

import click
from tabulate import tabulate

from seaweedfs_broker.config import Config, DEFAULT_CONFIG_PATH
from seaweedfs_broker.exceptions import BrokerError, ConfigurationError
from seaweedfs_broker.logging_config import setup_logging
from seaweedfs_broker.manifest.generator import ManifestGenerator
from seaweedfs_broker.models.instance import DedicatedCluster, ServiceInstance
from seaweedfs_broker.services.broker import build_catalog
from seaweedfs_broker.services.operations import OperationWorker
from seaweedfs_broker.storage.factory import StorageFactory

PLACEHOLDER_ACCESS_KEY = "ADMIN_ACCESS_KEY"
PLACEHOLDER_SECRET_KEY = "ADMIN_SECRET_KEY"


def _load(config_path: str) -> Config:
    try:
        return Config.from_file(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--config', '-c', 'config_path', envvar='BROKER_CONFIG_PATH',
              default=DEFAULT_CONFIG_PATH, show_default=True,
              help='Broker configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config_path, verbose):
    """SeaweedFS service broker - Open Service Broker for SeaweedFS object storage."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['verbose'] = verbose


def _config(ctx) -> Config:
    config = ctx.obj.get('config')
    if config is None:
        config = ctx.obj['config'] = _load(ctx.obj['config_path'])
        if ctx.obj['verbose']:
            config.log_level = 'debug'
    return config


@cli.command()
@click.pass_context
def serve(ctx):
    """Run the broker API server."""
    from seaweedfs_broker.api.service_broker import run_server

    config = _config(ctx)
    setup_logging(config)
    run_server(config)


@cli.command()
@click.pass_context
def catalog(ctx):
    """Print the service catalog as JSON."""
    config = _config(ctx)
    click.echo(json.dumps(build_catalog(config).model_dump(exclude_none=True), indent=2))


@cli.command('render-manifest')
@click.option('--plan', 'plan_id', required=True, help='Dedicated plan ID')
@click.option('--instance-id', required=True, help='Service instance ID')
@click.pass_context
def render_manifest(ctx, plan_id, instance_id):
    """Print the deployment manifest a dedicated plan would produce."""
    config = _config(ctx)

    for service in config.catalog.services:
        plan = config.find_plan(service.id, plan_id)
        if plan is not None:
            break
    else:
        raise click.ClickException(f"Plan {plan_id} not found in catalog")

    if not plan.is_dedicated:
        raise click.ClickException(f"Plan {plan_id} is not a dedicated plan")

    instance = ServiceInstance(
        instance_id=instance_id,
        service_id=service.id,
        plan_id=plan.id,
        backing=DedicatedCluster(
            deployment_name=f"{config.bosh.deployment_prefix}-{instance_id[:8]}",
            admin_access_key=PLACEHOLDER_ACCESS_KEY,
            admin_secret_key=PLACEHOLDER_SECRET_KEY,
        ),
    )
    click.echo(ManifestGenerator(config).generate(instance, plan), nl=False)


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']),
              default='table', help='Output format')
@click.pass_context
def instances(ctx, output_format):
    """List service instances in the state store."""
    config = _config(ctx)

    async def _list():
        store = await StorageFactory.create_store(config.state_store)
        try:
            rows = []
            for instance in await store.list_instances():
                bindings = await store.list_bindings_for_instance(instance.instance_id)
                rows.append((instance, len(bindings)))
            return rows
        finally:
            await store.close()

    try:
        rows = asyncio.run(_list())
    except BrokerError as e:
        raise click.ClickException(str(e))

    if output_format == 'json':
        click.echo(json.dumps([
            {
                'instance_id': instance.instance_id,
                'plan_id': instance.plan_id,
                'kind': instance.backing.kind,
                'state': instance.state.value,
                'state_message': instance.state_message,
                'bindings': count,
            }
            for instance, count in rows
        ], indent=2))
        return

    if not rows:
        click.echo("No service instances found")
        return

    headers = ['Instance', 'Plan', 'Kind', 'State', 'Bindings']
    table = [
        [instance.instance_id, instance.plan_id, instance.backing.kind, instance.state.value, count]
        for instance, count in rows
    ]
    click.echo(tabulate(table, headers=headers, tablefmt='grid'))
    click.echo(f"\nTotal: {len(rows)} instances")


@cli.command()
@click.pass_context
def resume(ctx):
    """Resume pending operations once and wait for them to finish."""
    from seaweedfs_broker.api.service_broker import create_broker_service

    config = _config(ctx)
    setup_logging(config)
    worker = OperationWorker()

    try:
        broker = asyncio.run(create_broker_service(config, worker))
    except BrokerError as e:
        worker.shutdown(wait=False)
        raise click.ClickException(str(e))

    try:
        resumed = asyncio.run(broker.resume_pending_operations())
    except BrokerError as e:
        raise click.ClickException(str(e))
    finally:
        worker.shutdown(wait=True)
        asyncio.run(broker.close())

    click.echo(f"Resumed {resumed} pending operation(s)")

