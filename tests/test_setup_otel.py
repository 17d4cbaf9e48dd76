"""End-to-end tests for setup_otel.py with external commands and HTTP faked."""

import io
import sys
from pathlib import Path

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / 'scripts'
sys.path.insert(0, str(SCRIPTS_DIR))

import setup_otel
from launcher import COLLECTOR_METRICS_URL, GRAFANA_HEALTH_URL, PROMETHEUS_HEALTH_URL

ENV_VARS = (
    'SPANNER_PROJECT_ID', 'SPANNER_INSTANCE_ID', 'SPANNER_DATABASE_ID',
    'SERVICE_ACCOUNT_KEY_PATH', 'SERVICE_ACCOUNT_EMAIL',
    'OTEL_WORK_DIR', 'USE_PODMAN', 'DEV_MODE', 'COMPOSE_CMD',
)

BASE_ARGS = ['-p', 'p1', '-i', 'i1', '-d', 'd1', '-k', 'ADC']


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    work = tmp_path / 'work'
    work.mkdir()
    monkeypatch.setenv('OTEL_WORK_DIR', str(work))
    monkeypatch.setattr(sys, 'stdin', io.StringIO(''))
    return work


@pytest.fixture
def docker_host(available_tools, fake_run, fake_http, no_sleep):
    """git, curl and docker with the compose plugin; every service healthy."""
    available_tools.update({'git', 'curl', 'docker'})
    fake_http.route(PROMETHEUS_HEALTH_URL)
    fake_http.route(GRAFANA_HEALTH_URL)
    fake_http.route(COLLECTOR_METRICS_URL, text='')
    return fake_run


def example_dir(work_dir):
    return work_dir / 'OtelCloudSpannerReceiverExample'


class TestArgumentParsing:
    """Tests for the command-line surface."""

    def test_help_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as exc:
            setup_otel.main(['--help'])
        assert exc.value.code == 0
        assert '--service-account-key' in capsys.readouterr().out

    def test_unknown_flag_exits_one(self, capsys):
        with pytest.raises(SystemExit) as exc:
            setup_otel.main(['--frobnicate'])
        assert exc.value.code == 1
        assert 'unrecognized arguments: --frobnicate' in capsys.readouterr().err


class TestSetupFlow:
    """Tests for a complete setup run."""

    def test_full_run_with_adc(self, work_dir, docker_host, no_sleep):
        assert setup_otel.main(BASE_ARGS + ['--use-docker']) == 0

        example = example_dir(work_dir)
        collector = (example / 'collector' / 'config.yml').read_text()
        assert 'project_id: "p1"' in collector
        assert 'instance_id: "i1"' in collector
        assert '- "d1"' in collector
        assert 'service_account_key:' not in collector
        assert 'otel/opentelemetry-collector-contrib:0.42.0' in (example / 'docker-compose.yml').read_text()
        assert (example / 'check-status.sh').is_file()
        assert not (example / 'update-otel.sh').exists()
        assert ['docker', 'compose', 'up', '-d'] in docker_host.commands
        assert no_sleep == [10]

    def test_order_of_external_commands(self, work_dir, docker_host):
        """Runtime probe, clone, then compose up."""
        setup_otel.main(BASE_ARGS)

        commands = docker_host.commands
        assert commands.index(['docker', 'compose', 'version']) < commands.index(
            ['git', 'clone', 'https://github.com/cloudspannerecosystem/OtelCloudSpannerReceiverExample.git',
             str(example_dir(work_dir))])
        assert commands[-1] == ['docker', 'compose', 'up', '-d']

    def test_environment_only(self, work_dir, docker_host, monkeypatch):
        """All three SPANNER_* variables are enough without flags or prompts."""
        monkeypatch.setenv('SPANNER_PROJECT_ID', 'env-p')
        monkeypatch.setenv('SPANNER_INSTANCE_ID', 'env-i')
        monkeypatch.setenv('SPANNER_DATABASE_ID', 'env-d')

        assert setup_otel.main(['--skip-clone']) == 0

        env_file = (example_dir(work_dir) / '.env').read_text()
        assert 'SPANNER_PROJECT_ID=env-p\n' in env_file
        assert 'SPANNER_DATABASE_ID=env-d\n' in env_file
        assert not any(c[0] == 'git' for c in docker_host.commands)

    def test_dev_mode_from_environment(self, work_dir, docker_host, monkeypatch):
        """DEV_MODE=yes selects the local image and builds it."""
        monkeypatch.setenv('DEV_MODE', 'yes')
        (work_dir / 'opentelemetry-collector-contrib').mkdir()

        assert setup_otel.main(BASE_ARGS) == 0

        example = example_dir(work_dir)
        assert 'otel/opentelemetry-collector-contrib:local' in (example / 'docker-compose.yml').read_text()
        assert ['make', 'docker-otelcontribcol'] in docker_host.commands
        assert (example / 'update-otel.sh').is_file()

    def test_missing_identifiers_non_interactive(self, work_dir, docker_host, capsys):
        assert setup_otel.main(['-p', 'p1']) == 1
        assert 'Missing required configuration' in capsys.readouterr().err

    def test_missing_key_file(self, work_dir, docker_host, capsys):
        assert setup_otel.main(['-p', 'p1', '-i', 'i1', '-d', 'd1', '-k', '/nonexistent/key.json']) == 1
        assert 'File not found: /nonexistent/key.json' in capsys.readouterr().err

    def test_compose_override(self, work_dir, docker_host, monkeypatch):
        monkeypatch.setenv('COMPOSE_CMD', 'docker compose -p spanner')

        assert setup_otel.main(BASE_ARGS) == 0

        assert ['docker', 'compose', '-p', 'spanner', 'up', '-d'] in docker_host.commands
        assert 'COMPOSE_CMD=docker compose -p spanner\n' in (example_dir(work_dir) / '.env').read_text()


class TestNoRuntime:
    """Tests for hosts without Podman or Docker."""

    def test_exits_one_without_writing(self, work_dir, available_tools, fake_run, capsys):
        available_tools.update({'git', 'curl'})

        assert setup_otel.main(BASE_ARGS) == 1

        assert list(work_dir.iterdir()) == []
        assert fake_run.calls == []
        assert 'Neither Podman nor Docker found' in capsys.readouterr().err

    def test_missing_tools(self, work_dir, available_tools, fake_run, capsys):
        available_tools.add('docker')

        assert setup_otel.main(BASE_ARGS) == 1
        assert 'Missing required tools: git curl' in capsys.readouterr().err


class TestHealthPolicy:
    """Tests for advisory and strict health handling."""

    @pytest.fixture
    def grafana_down(self, available_tools, fake_run, fake_http, no_sleep):
        available_tools.update({'git', 'curl', 'docker'})
        fake_http.route(PROMETHEUS_HEALTH_URL)
        return fake_run

    def test_advisory_by_default(self, work_dir, grafana_down):
        assert setup_otel.main(BASE_ARGS) == 0
        assert (example_dir(work_dir) / 'check-status.sh').is_file()

    def test_strict_health_fails(self, work_dir, grafana_down, capsys):
        assert setup_otel.main(BASE_ARGS + ['--strict-health']) == 1

        assert 'Services failed health checks' in capsys.readouterr().err
        assert not (example_dir(work_dir) / 'check-status.sh').exists()

    def test_compose_up_failure(self, work_dir, docker_host):
        docker_host.respond(['docker', 'compose', 'up'], returncode=1)

        assert setup_otel.main(BASE_ARGS) == 1


class TestCleanup:
    """Tests for --cleanup."""

    def test_down_with_volumes(self, work_dir, docker_host):
        example_dir(work_dir).mkdir()

        assert setup_otel.main(['--cleanup']) == 0

        assert docker_host.commands[-1] == ['docker', 'compose', 'down', '-v']
        assert docker_host.cwd_of(['docker', 'compose', 'down']) == str(example_dir(work_dir))

    def test_missing_example_dir(self, work_dir, docker_host, capsys):
        assert setup_otel.main(['--cleanup']) == 1
        assert 'Example directory not found' in capsys.readouterr().err


class TestInterrupt:
    """Tests for Ctrl-C handling."""

    def test_keyboard_interrupt_exits_one(self, work_dir, monkeypatch, capsys):
        def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr(setup_otel, 'run_setup', interrupted)

        assert setup_otel.main(BASE_ARGS) == 1
        assert 'Setup interrupted' in capsys.readouterr().err
