"""
Compose lifecycle and HTTP health probes for the monitoring stack.
"""

import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from log_utils import SetupError, log, log_error, log_success, log_warn
from models import HealthPolicy, HealthReport, RuntimeSelection, SetupConfig
from prerequisites import run_command

PROMETHEUS_HEALTH_URL = 'http://localhost:9090/-/healthy'
GRAFANA_HEALTH_URL = 'http://localhost:3000/api/health'
COLLECTOR_METRICS_URL = 'http://localhost:8889/metrics'

# Flat wait after `up -d`; not a readiness poll
STARTUP_WAIT_SECONDS = 10
PROBE_TIMEOUT_SECONDS = 5

SPANNER_METRIC_PREFIX = 'googlecloudspanner'

HttpGet = Callable[..., requests.Response]


def run_compose(
    runtime: RuntimeSelection,
    *args: str,
    cwd: Path,
    capture: bool = False,
) -> subprocess.CompletedProcess:
    """Run `<compose command> <args>` in the example directory."""
    return run_command(list(runtime.command) + list(args), cwd=cwd, capture=capture)


def probe(url: str, get: Optional[HttpGet] = None, require_ok: bool = True) -> bool:
    """Single-shot GET. With require_ok the response must be HTTP 200; otherwise any response counts."""
    try:
        response = (get or requests.get)(url, timeout=PROBE_TIMEOUT_SECONDS)
    except requests.RequestException:
        return False
    if require_ok:
        return response.status_code == 200
    return True


def fetch_collector_metrics(get: Optional[HttpGet] = None) -> Optional[str]:
    """Return the collector's Prometheus exposition text, or None if unreachable."""
    try:
        response = (get or requests.get)(COLLECTOR_METRICS_URL, timeout=PROBE_TIMEOUT_SECONDS)
    except requests.RequestException:
        return None
    return response.text


def spanner_metric_lines(metrics_text: str) -> list[str]:
    return [line for line in metrics_text.splitlines() if SPANNER_METRIC_PREFIX in line]


def check_services_health(compose_display: str, get: Optional[HttpGet] = None) -> HealthReport:
    """Probe Prometheus, Grafana and the collector metrics endpoint once each.

    A failing collector endpoint is only a warning; the report is unhealthy
    when Prometheus or Grafana fail.
    """
    log("Checking services health...")

    report = HealthReport(
        prometheus=probe(PROMETHEUS_HEALTH_URL, get),
        grafana=probe(GRAFANA_HEALTH_URL, get),
        collector_metrics=probe(COLLECTOR_METRICS_URL, get, require_ok=False),
    )

    if report.prometheus:
        log_success("Prometheus is healthy")
    else:
        log_error("Prometheus health check failed")

    if report.grafana:
        log_success("Grafana is healthy")
    else:
        log_error("Grafana health check failed")

    if report.collector_metrics:
        log_success("OTEL Collector metrics endpoint is accessible")
    else:
        log_warn("OTEL Collector metrics endpoint not responding")

    if not report.healthy:
        log_error("Some services failed health checks. Check logs with:")
        log_error(f"{compose_display} logs")

    return report


def start_services(
    config: SetupConfig,
    sleep: Optional[Callable[[float], None]] = None,
    get: Optional[HttpGet] = None,
) -> HealthReport:
    """Bring the stack up detached, wait a fixed delay, then probe it.

    Raises:
        SetupError: If the compose command itself fails (no retry)
    """
    log("Starting services...")
    result = run_compose(config.runtime, 'up', '-d', cwd=config.example_dir)
    if result.returncode != 0:
        raise SetupError(f"'{config.runtime.display} up -d' failed with exit code {result.returncode}")

    log("Waiting for services to start...")
    (sleep or time.sleep)(STARTUP_WAIT_SECONDS)

    return check_services_health(config.runtime.display, get)


def apply_health_policy(report: HealthReport, policy: HealthPolicy) -> None:
    """Advisory: an unhealthy report is reported and setup continues. Strict: it is fatal."""
    if report.healthy:
        return
    if policy == HealthPolicy.STRICT:
        raise SetupError("Services failed health checks")
    log_warn("Continuing setup; re-run the health check with ./check-status.sh once services settle")


def stop_services(runtime: RuntimeSelection, example_dir: Path, remove_volumes: bool = False) -> bool:
    args = ['down', '-v'] if remove_volumes else ['down']
    return run_compose(runtime, *args, cwd=example_dir).returncode == 0
