"""
Render the configuration files of the OtelCloudSpannerReceiverExample checkout.

Writes (relative to the example directory):
- collector/config.yml (receiver and exporters)
- docker-compose.yml
- prometheus/prometheus.yml (scrape config)
- grafana/provisioning/datasources/prometheus-datasource.yml
- grafana/provisioning/datasources/cloud-monitoring-datasource.yml (key file only)
- grafana/provisioning/dashboards/dashboards.yml
- .env and .gitignore

Each YAML file is built as data, dumped, re-parsed and validated against its
pydantic schema before it is written. Previous versions are copied to
backups/<timestamp>/ first.
"""

import json
import shutil
from datetime import datetime
from io import StringIO
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.scalarstring import DoubleQuotedScalarString, LiteralScalarString

from config_collector import KEY_FILENAME, read_key_field
from log_utils import SetupError, log, log_success, log_warn
from models import (
    CollectorConfig,
    ComposeFile,
    CredentialReference,
    DashboardProviderFile,
    DatasourceFile,
    PrometheusConfig,
    SetupConfig,
    TargetIdentity,
)

COLLECTOR_IMAGE = 'otel/opentelemetry-collector-contrib:0.42.0'
LOCAL_COLLECTOR_IMAGE = 'otel/opentelemetry-collector-contrib:local'
PROMETHEUS_IMAGE = 'prom/prometheus:v2.30.3'
GRAFANA_IMAGE = 'grafana/grafana:8.3.1'

COMPOSE_PROJECT_NAME = 'otel-spanner'

COLLECTOR_CONFIG_PATH = Path('collector') / 'config.yml'
COMPOSE_FILE_PATH = Path('docker-compose.yml')
PROMETHEUS_CONFIG_PATH = Path('prometheus') / 'prometheus.yml'
DATASOURCES_DIR = Path('grafana') / 'provisioning' / 'datasources'
PROMETHEUS_DATASOURCE_PATH = DATASOURCES_DIR / 'prometheus-datasource.yml'
CLOUD_MONITORING_DATASOURCE_PATH = DATASOURCES_DIR / 'cloud-monitoring-datasource.yml'
DASHBOARDS_DIR = Path('grafana') / 'provisioning' / 'dashboards'
DASHBOARDS_PROVIDER_PATH = DASHBOARDS_DIR / 'dashboards.yml'
ENV_FILE_PATH = Path('.env')
GITIGNORE_PATH = Path('.gitignore')

BACKUP_SOURCES = ('collector', 'docker-compose.yml', 'prometheus', 'grafana')

GITIGNORE_ENTRIES = ('.env', 'backups/', f'collector/{KEY_FILENAME}')
GITIGNORE_DEFAULTS = GITIGNORE_ENTRIES + ('*.log', '*.pid')

# Dashboard JSON exported with a bare datasource name
LEGACY_PROMETHEUS_DATASOURCE = 'Prometheus'
PROMETHEUS_DATASOURCE_REF = {'type': 'prometheus', 'uid': '${DS_PROMETHEUS}'}


def collector_image(dev_mode: bool) -> str:
    """Pinned release image, or the locally built tag in dev mode."""
    return LOCAL_COLLECTOR_IMAGE if dev_mode else COLLECTOR_IMAGE


def quoted(value: str) -> DoubleQuotedScalarString:
    return DoubleQuotedScalarString(value)


def to_yaml_nodes(data: Any) -> Any:
    """Convert nested dicts/lists to ruamel round-trip containers (keeps key order)."""
    if isinstance(data, dict):
        node = CommentedMap()
        for key, value in data.items():
            node[key] = to_yaml_nodes(value)
        return node
    if isinstance(data, list):
        return CommentedSeq(to_yaml_nodes(item) for item in data)
    return data


def dump_yaml(data: dict) -> str:
    yaml_writer = YAML()
    yaml_writer.indent(mapping=2, sequence=4, offset=2)
    yaml_writer.width = 4096
    stream = StringIO()
    yaml_writer.dump(to_yaml_nodes(data), stream)
    return stream.getvalue()


def validate_artifact(text: str, schema: type[BaseModel], name: str) -> None:
    """Re-parse rendered YAML and validate it against `schema`.

    Raises:
        SetupError: If the text is not valid YAML or does not match the schema
    """
    try:
        schema.model_validate(yaml.safe_load(text))
    except yaml.YAMLError as e:
        raise SetupError(f"Rendered {name} is not valid YAML: {e}") from e
    except ValidationError as e:
        details = []
        for error in e.errors():
            loc = ' -> '.join(str(x) for x in error['loc'])
            details.append(f"  {loc}: {error['msg']}")
        raise SetupError(f"Rendered {name} failed validation:\n" + '\n'.join(details)) from e


def render_artifact(data: dict, schema: type[BaseModel], name: str) -> str:
    text = dump_yaml(data)
    validate_artifact(text, schema, name)
    return text


def write_artifact(example_dir: Path, relative_path: Path, content: str) -> Path:
    path = example_dir / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    return path


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------

def render_collector_config(identity: TargetIdentity, credentials: CredentialReference) -> str:
    """Render collector/config.yml for one project/instance/database."""
    project = {'project_id': quoted(identity.project_id)}
    if not credentials.uses_adc:
        project['service_account_key'] = quoted(KEY_FILENAME)
    project['instances'] = [{
        'instance_id': quoted(identity.instance_id),
        'databases': [quoted(identity.database_id)],
    }]

    config = {
        'receivers': {
            'googlecloudspanner': {
                'collection_interval': '60s',
                'top_metrics_query_max_rows': 100,
                'projects': [project],
            },
        },
        'exporters': {
            'prometheus': {
                'add_metric_suffixes': False,
                'send_timestamps': True,
                'endpoint': quoted('0.0.0.0:8889'),
            },
            'logging': {'loglevel': 'debug'},
        },
        'processors': {
            'batch': {'send_batch_size': 200},
        },
        'service': {
            'pipelines': {
                'metrics': {
                    'receivers': ['googlecloudspanner'],
                    'processors': ['batch'],
                    'exporters': ['logging', 'prometheus'],
                },
            },
        },
    }
    return render_artifact(config, CollectorConfig, str(COLLECTOR_CONFIG_PATH))


def render_docker_compose(credentials: CredentialReference, dev_mode: bool) -> str:
    """Render docker-compose.yml; the collector mounts the key file unless ADC is used."""
    collector = {
        'image': collector_image(dev_mode),
        'depends_on': ['prometheus'],
    }
    if not credentials.uses_adc:
        collector['environment'] = [f'GOOGLE_APPLICATION_CREDENTIALS=/{KEY_FILENAME}']
    collector['ports'] = [quoted('8889:8889'), quoted('8888:8888')]
    collector['volumes'] = ['./collector/config.yml:/config.yml']
    if not credentials.uses_adc:
        collector['volumes'].append(f'./collector/{KEY_FILENAME}:/{KEY_FILENAME}')
    collector['command'] = ['--config=/config.yml']

    compose = {
        'version': quoted('3.9'),
        'services': {
            'prometheus': {
                'command': [
                    '--storage.tsdb.min-block-duration=30m',
                    '--query.lookback-delta=1m',
                    '--config.file=/etc/prometheus/prometheus.yml',
                    '--enable-feature=remote-write-receiver',
                ],
                'image': PROMETHEUS_IMAGE,
                'ports': [quoted('9090:9090')],
                'volumes': [
                    'prometheus-storage:/prometheus',
                    './prometheus/prometheus.yml:/etc/prometheus/prometheus.yml',
                ],
            },
            'grafana': {
                'image': GRAFANA_IMAGE,
                'depends_on': ['collector'],
                'ports': [quoted('3000:3000')],
                'volumes': [
                    'grafana-storage:/var/lib/grafana',
                    './grafana/provisioning/:/etc/grafana/provisioning/',
                ],
                'environment': [
                    'GF_SECURITY_ADMIN_USER=admin',
                    'GF_SECURITY_ADMIN_PASSWORD=admin',
                ],
            },
            'collector': collector,
        },
        'volumes': {
            'prometheus-storage': None,
            'grafana-storage': None,
        },
    }
    return render_artifact(compose, ComposeFile, str(COMPOSE_FILE_PATH))


def render_prometheus_config() -> str:
    config = {
        'global': {'scrape_interval': '15s'},
        'scrape_configs': [{
            'job_name': quoted('otel'),
            'honor_timestamps': True,
            'static_configs': [{
                'targets': [quoted('collector:8888'), quoted('collector:8889')],
            }],
        }],
    }
    return render_artifact(config, PrometheusConfig, str(PROMETHEUS_CONFIG_PATH))


def render_prometheus_datasource() -> str:
    datasources = {
        'apiVersion': 1,
        'datasources': [{
            'name': 'Prometheus',
            'type': 'prometheus',
            'access': 'proxy',
            'url': 'http://prometheus:9090',
        }],
    }
    return render_artifact(datasources, DatasourceFile, str(PROMETHEUS_DATASOURCE_PATH))


def render_cloud_monitoring_datasource(
    identity: TargetIdentity,
    credentials: CredentialReference,
) -> Optional[str]:
    """Render the Google Cloud Monitoring datasource, or None when it cannot be.

    Needs a key file (not ADC), a service account email and a private key in
    the key file. When any is missing the datasource is skipped.
    """
    if credentials.uses_adc or not credentials.email:
        return None
    private_key = read_key_field(credentials.key_path, 'private_key')
    if not private_key:
        return None

    datasources = {
        'apiVersion': 1,
        'datasources': [{
            'name': 'Google Cloud Monitoring',
            'type': 'stackdriver',
            'access': 'proxy',
            'jsonData': {
                'tokenUri': 'https://oauth2.googleapis.com/token',
                'clientEmail': credentials.email,
                'authenticationType': 'jwt',
                'defaultProject': identity.project_id,
            },
            'secureJsonData': {
                'privateKey': LiteralScalarString(private_key),
            },
        }],
    }
    return render_artifact(datasources, DatasourceFile, str(CLOUD_MONITORING_DATASOURCE_PATH))


def render_dashboards_provider() -> str:
    providers = {
        'apiVersion': 1,
        'providers': [{
            'name': 'dashboards',
            'type': 'file',
            'updateIntervalSeconds': 10,
            'allowUiUpdates': True,
            'options': {
                'path': '/etc/grafana/provisioning/dashboards',
                'foldersFromFilesStructure': True,
            },
        }],
    }
    return render_artifact(providers, DashboardProviderFile, str(DASHBOARDS_PROVIDER_PATH))


def render_env_file(config: SetupConfig, now: Optional[datetime] = None) -> str:
    """Render the .env file consumed by the compose tool and the helper scripts."""
    timestamp = (now or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')
    lines = [
        f"# Generated by OTEL setup script on {timestamp}",
        f"SPANNER_PROJECT_ID={config.identity.project_id}",
        f"SPANNER_INSTANCE_ID={config.identity.instance_id}",
        f"SPANNER_DATABASE_ID={config.identity.database_id}",
        f"COMPOSE_PROJECT_NAME={COMPOSE_PROJECT_NAME}",
        "",
        "# Container runtime",
        f"COMPOSE_CMD={config.runtime.display}",
        f"CONTAINER_ENGINE={config.runtime.engine}",
        f"USE_PODMAN={'true' if config.runtime.engine == 'podman' else 'false'}",
        "",
        "# Development mode",
        f"DEV_MODE={'true' if config.dev_mode else 'false'}",
    ]
    return '\n'.join(lines) + '\n'


# ---------------------------------------------------------------------------
# File maintenance
# ---------------------------------------------------------------------------

def backup_configs(example_dir: Path, now: Optional[datetime] = None) -> Path:
    """Copy existing config files/directories to backups/<YYYYmmdd-HHMMSS>/.

    Sources that do not exist are skipped.
    """
    stamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')
    backup_dir = example_dir / 'backups' / stamp
    backup_dir.mkdir(parents=True, exist_ok=True)

    for name in BACKUP_SOURCES:
        src = example_dir / name
        dest = backup_dir / name
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True)
        elif src.is_file():
            shutil.copy2(src, dest)

    log(f"Configurations backed up to: {backup_dir}")
    return backup_dir


def copy_service_account_key(credentials: CredentialReference, example_dir: Path) -> Optional[Path]:
    """Place the key file where the compose file mounts it from. No-op for ADC."""
    if credentials.uses_adc:
        return None
    dest = example_dir / 'collector' / KEY_FILENAME
    dest.parent.mkdir(parents=True, exist_ok=True)
    if not (dest.exists() and dest.resolve() == credentials.key_path.resolve()):
        shutil.copy2(credentials.key_path, dest)
    return dest


def append_unique_line(path: Path, line: str) -> bool:
    """Append `line` to `path` unless an identical line is already present.

    Returns:
        True if the line was appended
    """
    content = path.read_text(encoding='utf-8') if path.exists() else ''
    if line in content.splitlines():
        return False
    if content and not content.endswith('\n'):
        content += '\n'
    path.write_text(content + line + '\n', encoding='utf-8')
    return True


def update_gitignore(example_dir: Path) -> Path:
    """Keep generated secrets and backups out of version control."""
    gitignore = example_dir / GITIGNORE_PATH
    if gitignore.exists():
        for entry in GITIGNORE_ENTRIES:
            append_unique_line(gitignore, entry)
    else:
        gitignore.write_text('\n'.join(GITIGNORE_DEFAULTS) + '\n', encoding='utf-8')
    return gitignore


def _replace_legacy_datasources(node: Any) -> bool:
    changed = False
    if isinstance(node, dict):
        for key, value in node.items():
            if key == 'datasource' and value == LEGACY_PROMETHEUS_DATASOURCE:
                node[key] = dict(PROMETHEUS_DATASOURCE_REF)
                changed = True
            else:
                changed = _replace_legacy_datasources(value) or changed
    elif isinstance(node, list):
        for item in node:
            changed = _replace_legacy_datasources(item) or changed
    return changed


def fix_dashboard_datasources(dashboards_dir: Path) -> list[Path]:
    """Rewrite bare "Prometheus" datasource references in dashboard JSON files.

    Returns:
        Dashboards that were modified
    """
    fixed = []
    if not dashboards_dir.is_dir():
        return fixed
    for dashboard in sorted(dashboards_dir.rglob('*.json')):
        try:
            data = json.loads(dashboard.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            log_warn(f"Skipping unreadable dashboard {dashboard.name}: {e}")
            continue
        if _replace_legacy_datasources(data):
            dashboard.write_text(json.dumps(data, indent=2, ensure_ascii=False) + '\n', encoding='utf-8')
            fixed.append(dashboard)
    return fixed


def update_configurations(config: SetupConfig, now: Optional[datetime] = None) -> list[Path]:
    """Back up, then regenerate every configuration artifact for this run.

    Returns:
        Paths written (the ignore list included)
    """
    log("Updating configuration files...")
    example_dir = config.example_dir
    example_dir.mkdir(parents=True, exist_ok=True)

    backup_configs(example_dir, now)

    # Render everything first so a validation failure writes nothing beyond the backup
    artifacts = [
        (COLLECTOR_CONFIG_PATH, render_collector_config(config.identity, config.credentials)),
        (COMPOSE_FILE_PATH, render_docker_compose(config.credentials, config.dev_mode)),
        (PROMETHEUS_CONFIG_PATH, render_prometheus_config()),
        (PROMETHEUS_DATASOURCE_PATH, render_prometheus_datasource()),
        (DASHBOARDS_PROVIDER_PATH, render_dashboards_provider()),
        (ENV_FILE_PATH, render_env_file(config, now)),
    ]
    cloud_monitoring = render_cloud_monitoring_datasource(config.identity, config.credentials)
    if cloud_monitoring is not None:
        artifacts.append((CLOUD_MONITORING_DATASOURCE_PATH, cloud_monitoring))
    else:
        log("Skipping Cloud Monitoring datasource (needs a key file with client email and private key)")

    copy_service_account_key(config.credentials, example_dir)

    written = []
    for relative_path, content in artifacts:
        log(f"Writing {relative_path}")
        written.append(write_artifact(example_dir, relative_path, content))

    for dashboard in fix_dashboard_datasources(example_dir / DASHBOARDS_DIR):
        log(f"Fixed datasource references in {dashboard.name}")

    written.append(update_gitignore(example_dir))

    log_success("All configurations updated")
    return written
