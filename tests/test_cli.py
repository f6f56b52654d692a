"""Tests for CLI functionality."""

import asyncio
import json

import pytest
import yaml
from click.testing import CliRunner

from seaweedfs_broker.cli.main import cli
from seaweedfs_broker.models.factory import ServiceBindingFactory, ServiceInstanceFactory
from seaweedfs_broker.storage.file_store import FileStateStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, config_data):
    path = tmp_path / 'broker.yml'
    path.write_text(yaml.safe_dump(config_data))
    return str(path)


def seed_state(path):
    async def _seed():
        store = FileStateStore(path)
        await store.initialize()
        await store.save_instance(ServiceInstanceFactory.create_shared("instance-shared"))
        await store.save_instance(ServiceInstanceFactory.create_dedicated("instance-dedicated"))
        await store.save_binding(ServiceBindingFactory.create_default("instance-shared", "binding-1"))
        await store.close()

    asyncio.run(_seed())


class TestCLICommands:
    """Test CLI commands."""

    def test_cli_help(self, runner):
        result = runner.invoke(cli, ['--help'])

        assert result.exit_code == 0
        assert 'SeaweedFS service broker' in result.output
        for command in ('serve', 'catalog', 'render-manifest', 'instances', 'resume'):
            assert command in result.output

    def test_catalog(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'catalog'])

        assert result.exit_code == 0
        catalog = json.loads(result.output)
        assert catalog['services'][0]['name'] == 'seaweedfs'
        assert len(catalog['services'][0]['plans']) == 2

    def test_config_from_environment(self, runner, config_file):
        result = runner.invoke(cli, ['catalog'], env={'BROKER_CONFIG_PATH': config_file})
        assert result.exit_code == 0

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ['--config', str(tmp_path / 'missing.yml'), 'catalog'])

        assert result.exit_code == 1
        assert 'Failed to load configuration file' in result.output

    def test_render_manifest(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'render-manifest',
                                     '--plan', 'dedicated-plan', '--instance-id', 'abcdef12-3456'])

        assert result.exit_code == 0
        manifest = yaml.safe_load(result.output)
        assert manifest['name'] == 'seaweedfs-abcdef12'
        assert 'ADMIN_SECRET_KEY' in result.output

    def test_render_manifest_shared_plan(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'render-manifest',
                                     '--plan', 'shared-plan', '--instance-id', 'abc'])

        assert result.exit_code == 1
        assert 'not a dedicated plan' in result.output

    def test_render_manifest_unknown_plan(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'render-manifest',
                                     '--plan', 'nope', '--instance-id', 'abc'])

        assert result.exit_code == 1
        assert 'not found in catalog' in result.output

    def test_instances_empty(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'instances'])

        assert result.exit_code == 0
        assert 'No service instances found' in result.output

    def test_instances_table(self, runner, config_file, config_data):
        seed_state(config_data['state_store']['path'])

        result = runner.invoke(cli, ['--config', config_file, 'instances'])

        assert result.exit_code == 0
        cells = [
            [cell.strip() for cell in line.strip('|').split('|')]
            for line in result.output.splitlines() if line.startswith('|')
        ]
        assert cells[0] == ['Instance', 'Plan', 'Kind', 'State', 'Bindings']
        rows = {row[0]: row[1:] for row in cells[1:]}
        assert rows['instance-shared'] == ['shared-plan', 'shared', 'succeeded', '1']
        assert rows['instance-dedicated'] == ['dedicated-plan', 'dedicated', 'succeeded', '0']
        assert 'Total: 2 instances' in result.output

    def test_instances_json(self, runner, config_file, config_data):
        seed_state(config_data['state_store']['path'])

        result = runner.invoke(cli, ['--config', config_file, 'instances', '--format', 'json'])

        assert result.exit_code == 0
        by_id = {row['instance_id']: row for row in json.loads(result.output)}
        assert by_id['instance-shared']['bindings'] == 1
        assert by_id['instance-dedicated']['kind'] == 'dedicated'
