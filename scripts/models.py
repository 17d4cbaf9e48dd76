"""
Pydantic models for the setup run and for the generated configuration files.

The run models (TargetIdentity, CredentialReference, RuntimeSelection,
SetupConfig) are frozen: they are built once by the collector and passed
explicitly to every later step.

The artifact models validate each rendered YAML file before it is written,
catching malformed output with clear error messages.
"""

from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Literal accepted on the command line / in the environment for ambient credentials
ADC_SENTINEL = 'ADC'

EXAMPLE_DIR_NAME = 'OtelCloudSpannerReceiverExample'
OTEL_CONTRIB_DIR_NAME = 'opentelemetry-collector-contrib'


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

class TargetIdentity(BaseModel):
    """The Cloud Spanner database being monitored."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    project_id: str = Field(..., min_length=1, description="GCP project ID")
    instance_id: str = Field(..., min_length=1, description="Cloud Spanner instance ID")
    database_id: str = Field(..., min_length=1, description="Cloud Spanner database ID")


class CredentialReference(BaseModel):
    """Service account key file, or None for Application Default Credentials."""
    model_config = ConfigDict(frozen=True)

    key_path: Optional[Path] = None
    email: str = ''

    @property
    def uses_adc(self) -> bool:
        return self.key_path is None


class RuntimeSelection(BaseModel):
    """Compose invocation resolved once per run (e.g. ('docker', 'compose'))."""
    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] = Field(..., min_length=1)
    engine: Literal['podman', 'docker']

    @property
    def display(self) -> str:
        return ' '.join(self.command)


class SetupConfig(BaseModel):
    """Everything the renderer, launcher and helper emitter need for one run."""
    model_config = ConfigDict(frozen=True)

    identity: TargetIdentity
    credentials: CredentialReference = Field(default_factory=CredentialReference)
    runtime: RuntimeSelection
    dev_mode: bool = False
    work_dir: Path

    @property
    def example_dir(self) -> Path:
        return self.work_dir / EXAMPLE_DIR_NAME

    @property
    def otel_contrib_dir(self) -> Path:
        return self.work_dir / OTEL_CONTRIB_DIR_NAME


class Outcome(str, Enum):
    OK = 'ok'
    WARNING = 'warning'


class StepResult(BaseModel):
    """Result of a step whose failure policy is decided by the caller."""
    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    message: str = ''

    @classmethod
    def ok(cls, message: str = '') -> 'StepResult':
        return cls(outcome=Outcome.OK, message=message)

    @classmethod
    def warning(cls, message: str) -> 'StepResult':
        return cls(outcome=Outcome.WARNING, message=message)

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.OK


class HealthPolicy(str, Enum):
    """What an unhealthy report means for the setup run."""
    ADVISORY = 'advisory'
    STRICT = 'strict'


class HealthReport(BaseModel):
    """Outcome of the three post-start probes."""
    prometheus: bool
    grafana: bool
    collector_metrics: bool

    @property
    def healthy(self) -> bool:
        # The collector metrics endpoint is informational only
        return self.prometheus and self.grafana


# ---------------------------------------------------------------------------
# Collector configuration schema
# ---------------------------------------------------------------------------

class SpannerInstance(BaseModel):
    instance_id: str = Field(..., min_length=1)
    databases: list[str] = Field(..., min_length=1)


class SpannerProject(BaseModel):
    project_id: str = Field(..., min_length=1)
    service_account_key: Optional[str] = Field(None, min_length=1)
    instances: list[SpannerInstance] = Field(..., min_length=1)


class SpannerReceiver(BaseModel):
    collection_interval: str = Field(..., pattern=r'^\d+(ms|s|m|h)$')
    top_metrics_query_max_rows: int = Field(..., ge=1)
    projects: list[SpannerProject] = Field(..., min_length=1)


class Pipeline(BaseModel):
    receivers: list[str] = Field(..., min_length=1)
    processors: list[str] = Field(default_factory=list)
    exporters: list[str] = Field(..., min_length=1)


class CollectorService(BaseModel):
    pipelines: dict[str, Pipeline] = Field(..., min_length=1)


class CollectorConfig(BaseModel):
    """Root of collector/config.yml."""
    receivers: dict[str, SpannerReceiver] = Field(..., min_length=1)
    exporters: dict[str, dict] = Field(..., min_length=1)
    processors: dict[str, dict] = Field(default_factory=dict)
    service: CollectorService

    @model_validator(mode='after')
    def validate_pipeline_references(self) -> 'CollectorConfig':
        """Every component named in a pipeline must be declared."""
        errors = []
        declared = {
            'receivers': self.receivers,
            'processors': self.processors,
            'exporters': self.exporters,
        }
        for name, pipeline in self.service.pipelines.items():
            for kind, components in declared.items():
                for ref in getattr(pipeline, kind):
                    if ref not in components:
                        errors.append(f"Pipeline {name} references undeclared {kind[:-1]}: {ref}")
        if errors:
            raise ValueError('\n'.join(errors))
        return self


# ---------------------------------------------------------------------------
# Compose file schema
# ---------------------------------------------------------------------------

class ComposeService(BaseModel):
    model_config = ConfigDict(extra='allow')

    image: str = Field(..., min_length=1)
    command: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    environment: list[str] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)


class ComposeFile(BaseModel):
    """Root of docker-compose.yml."""
    version: Optional[str] = None
    services: dict[str, ComposeService] = Field(..., min_length=1)
    volumes: dict[str, Optional[dict]] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_references(self) -> 'ComposeFile':
        """Check depends_on targets and named volumes exist."""
        errors = []
        for name, service in self.services.items():
            for dependency in service.depends_on:
                if dependency not in self.services:
                    errors.append(f"Service {name} depends on unknown service: {dependency}")
            for mount in service.volumes:
                source = mount.split(':', 1)[0]
                if source.startswith(('.', '/', '~')):
                    continue
                if source not in self.volumes:
                    errors.append(f"Service {name} mounts undeclared volume: {source}")
        if errors:
            raise ValueError('\n'.join(errors))
        return self


# ---------------------------------------------------------------------------
# Prometheus and Grafana provisioning schemas
# ---------------------------------------------------------------------------

class StaticConfig(BaseModel):
    targets: list[str] = Field(..., min_length=1)


class ScrapeConfig(BaseModel):
    job_name: str = Field(..., min_length=1)
    honor_timestamps: bool = True
    static_configs: list[StaticConfig] = Field(..., min_length=1)


class PrometheusGlobal(BaseModel):
    scrape_interval: str = Field('15s', pattern=r'^\d+(ms|s|m|h)$')


class PrometheusConfig(BaseModel):
    """Root of prometheus/prometheus.yml."""
    model_config = ConfigDict(populate_by_name=True)

    global_: PrometheusGlobal = Field(default_factory=PrometheusGlobal, alias='global')
    scrape_configs: list[ScrapeConfig] = Field(..., min_length=1)


class Datasource(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    access: Literal['proxy', 'direct'] = 'proxy'
    url: Optional[str] = None
    jsonData: dict = Field(default_factory=dict)
    secureJsonData: dict = Field(default_factory=dict)


class DatasourceFile(BaseModel):
    """Root of a grafana/provisioning/datasources/*.yml file."""
    apiVersion: int = Field(1, ge=1)
    datasources: list[Datasource] = Field(..., min_length=1)


class DashboardProviderOptions(BaseModel):
    path: str = Field(..., min_length=1)
    foldersFromFilesStructure: bool = False


class DashboardProvider(BaseModel):
    name: str = Field(..., min_length=1)
    type: Literal['file'] = 'file'
    updateIntervalSeconds: int = Field(10, ge=1)
    allowUiUpdates: bool = False
    options: DashboardProviderOptions


class DashboardProviderFile(BaseModel):
    """Root of grafana/provisioning/dashboards/dashboards.yml."""
    apiVersion: int = Field(1, ge=1)
    providers: list[DashboardProvider] = Field(..., min_length=1)
