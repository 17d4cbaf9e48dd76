"""
Emit the operator helper scripts into the example directory.

Scripts are rendered from Jinja2 templates in scripts/templates/ and written
with mode 0755, replacing any previous version. The setup flow never runs them.
"""

import shlex
from pathlib import Path

from jinja2 import FileSystemLoader
from jinja2.sandbox import SandboxedEnvironment

from launcher import (
    COLLECTOR_METRICS_URL,
    GRAFANA_HEALTH_URL,
    PROMETHEUS_HEALTH_URL,
    SPANNER_METRIC_PREFIX,
)
from log_utils import log, log_success
from models import SetupConfig
from render_configs import LOCAL_COLLECTOR_IMAGE
from repositories import BUILT_IMAGE

TEMPLATES_DIR = Path(__file__).parent / 'templates'

HELPER_SCRIPTS = (
    'check-status.sh',
    'view-logs.sh',
    'restart-services.sh',
    'generate-traffic.sh',
)
DEV_HELPER_SCRIPTS = ('update-otel.sh',)

DEFAULT_TRAFFIC_DURATION = 300


def build_script_context(config: SetupConfig) -> dict:
    return {
        'COMPOSE_CMD': shlex.join(config.runtime.command),
        'ENGINE': config.runtime.engine,
        'EXAMPLE_DIR': str(config.example_dir),
        'OTEL_CONTRIB_DIR': str(config.otel_contrib_dir),
        'PROJECT_ID': config.identity.project_id,
        'INSTANCE_ID': config.identity.instance_id,
        'DATABASE_ID': config.identity.database_id,
        'DEFAULT_DURATION': DEFAULT_TRAFFIC_DURATION,
        'PROMETHEUS_HEALTH_URL': PROMETHEUS_HEALTH_URL,
        'GRAFANA_HEALTH_URL': GRAFANA_HEALTH_URL,
        'COLLECTOR_METRICS_URL': COLLECTOR_METRICS_URL,
        'METRIC_PREFIX': SPANNER_METRIC_PREFIX,
        'BUILT_IMAGE': BUILT_IMAGE,
        'LOCAL_IMAGE': LOCAL_COLLECTOR_IMAGE,
    }


def make_environment(templates_dir: Path = TEMPLATES_DIR) -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        loader=FileSystemLoader(templates_dir),
        keep_trailing_newline=True,
    )
    env.filters['shell_quote'] = lambda value: shlex.quote(str(value))
    return env


def render_helper_script(name: str, context: dict, env: SandboxedEnvironment) -> str:
    template = env.get_template(f'{name}.j2')
    return template.render(**context)


def create_helper_scripts(config: SetupConfig, templates_dir: Path = TEMPLATES_DIR) -> list[Path]:
    """Write the helper scripts; update-otel.sh only in dev mode.

    Returns:
        Paths of the scripts written
    """
    log("Creating helper scripts...")
    env = make_environment(templates_dir)
    context = build_script_context(config)

    names = HELPER_SCRIPTS + (DEV_HELPER_SCRIPTS if config.dev_mode else ())
    written = []
    for name in names:
        path = config.example_dir / name
        path.write_text(render_helper_script(name, context, env), encoding='utf-8')
        path.chmod(0o755)
        written.append(path)

    log_success(f"Created {', '.join(names)}")
    return written
