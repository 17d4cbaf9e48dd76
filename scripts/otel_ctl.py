#!/usr/bin/env python3
"""
Day-to-day operations for an OTEL Cloud Spanner receiver stack set up by setup_otel.py.

Usage:
    python scripts/otel_ctl.py start|stop|restart|status
    python scripts/otel_ctl.py logs [collector|prometheus|grafana]
    python scripts/otel_ctl.py build|update
    python scripts/otel_ctl.py traffic [DURATION_SECONDS]
    python scripts/otel_ctl.py validate|metrics|troubleshoot|clean|health
    python scripts/otel_ctl.py dash|prom

Values not set in the environment are read from the .env file that
setup_otel.py writes into the example directory.
"""

import argparse
import os
import shlex
import signal
import socket
import sys
import time
import webbrowser
from pathlib import Path
from typing import Callable, Mapping, Optional

import requests

from config_collector import (
    IDENTITY_ENV_VARS,
    env_flag,
    load_env_file,
    read_input,
    resolve_work_dir,
)
from launcher import (
    COLLECTOR_METRICS_URL,
    GRAFANA_HEALTH_URL,
    PROBE_TIMEOUT_SECONDS,
    PROMETHEUS_HEALTH_URL,
    fetch_collector_metrics,
    probe,
    run_compose,
    spanner_metric_lines,
)
from log_utils import GREEN, RED, YELLOW, SetupError, colour, log, log_error, log_success, log_warn
from models import EXAMPLE_DIR_NAME, OTEL_CONTRIB_DIR_NAME, RuntimeSelection
from prerequisites import detect_compose_runtime, run_command
from repositories import build_collector_image

PROMETHEUS_TARGETS_URL = 'http://localhost:9090/api/v1/targets'
PROMETHEUS_JOB = 'otel'

START_WAIT_SECONDS = 5
UPDATE_WAIT_SECONDS = 3

STACK_PORTS = (9090, 3000, 8888, 8889)
SERVICES = ('collector', 'prometheus', 'grafana')

TRAFFIC_SCRIPT = 'generate-traffic.sh'
TRAFFIC_PID_FILE = 'traffic-generator.pid'

GRAFANA_URL = 'http://localhost:3000'
PROMETHEUS_URL = 'http://localhost:9090'


class Workspace:
    """Resolved paths, environment and compose runtime for one command."""

    def __init__(self, environ: Mapping[str, str], runtime_factory: Callable[..., RuntimeSelection] = detect_compose_runtime):
        work_dir = resolve_work_dir(environ)
        self.example_dir = work_dir / EXAMPLE_DIR_NAME
        self.otel_contrib_dir = work_dir / OTEL_CONTRIB_DIR_NAME

        # Environment wins over the generated .env
        self.env = dict(load_env_file(self.example_dir / '.env'))
        self.env.update({k: v for k, v in environ.items() if v})

        self._runtime_factory = runtime_factory
        self._runtime = None

    def recorded_runtime(self) -> Optional[RuntimeSelection]:
        """The runtime the setup run chose, if .env (or the environment) records it."""
        command = shlex.split(self.env.get('COMPOSE_CMD', ''))
        engine = self.env.get('CONTAINER_ENGINE', '').strip().lower()
        if not command or engine not in ('podman', 'docker'):
            return None
        return RuntimeSelection(command=tuple(command), engine=engine)

    @property
    def runtime(self) -> RuntimeSelection:
        if self._runtime is None:
            self._runtime = self.recorded_runtime()
        if self._runtime is None:
            self._runtime = self._runtime_factory(
                use_podman=env_flag(self.env, 'USE_PODMAN', True),
                compose_override=self.env.get('COMPOSE_CMD'),
            )
        return self._runtime

    def require_example_dir(self) -> Path:
        if not self.example_dir.is_dir():
            raise SetupError(f"Example directory not found: {self.example_dir}. Run setup_otel.py first")
        return self.example_dir

    def compose(self, *args: str) -> int:
        return run_compose(self.runtime, *args, cwd=self.require_example_dir()).returncode


def status_line(label: str, ok: bool, ok_text: str, fail_text: str) -> str:
    mark = colour(GREEN, f"✓ {ok_text}") if ok else colour(RED, f"✗ {fail_text}")
    return f"  {label:<16}{mark}"


def port_in_use(port: int, host: str = 'localhost') -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex((host, port)) == 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_start(ws: Workspace, args: argparse.Namespace) -> int:
    log("Starting OTEL services...")
    code = ws.compose('up', '-d')
    if code != 0:
        log_error(f"'{ws.runtime.display} up -d' failed with exit code {code}")
        return 1
    log_success("Services started")
    log("Waiting for services to be ready...")
    time.sleep(START_WAIT_SECONDS)
    return cmd_status(ws, args)


def cmd_stop(ws: Workspace, args: argparse.Namespace) -> int:
    log("Stopping OTEL services...")
    if ws.compose('down') != 0:
        return 1
    log_success("Services stopped")
    return 0


def cmd_restart(ws: Workspace, args: argparse.Namespace) -> int:
    log("Restarting services...")
    if ws.compose('restart') != 0:
        return 1
    log_success("Services restarted")
    return 0


def cmd_status(ws: Workspace, args: argparse.Namespace) -> int:
    print("Service Status:")
    print()
    ws.compose('ps')
    print()
    print("Health Checks:")
    print(status_line('Prometheus:', probe(PROMETHEUS_HEALTH_URL), 'Healthy', 'Not responding'))
    print(status_line('Grafana:', probe(GRAFANA_HEALTH_URL), 'Healthy', 'Not responding'))

    metrics = fetch_collector_metrics()
    print(status_line('OTEL Metrics:', metrics is not None, 'Available', 'Not available'))
    if metrics is not None:
        print()
        print("Metrics Summary:")
        print(f"  Cloud Spanner metrics: {len(spanner_metric_lines(metrics))}")
    return 0


def cmd_logs(ws: Workspace, args: argparse.Namespace) -> int:
    services = [args.service] if args.service else []
    return ws.compose('logs', '-f', *services)


def cmd_build(ws: Workspace, args: argparse.Namespace) -> int:
    if not ws.otel_contrib_dir.is_dir():
        log_error("OTEL contrib directory not found!")
        print("Run 'setup_otel.py --dev-mode' first to set up the development environment")
        return 1
    build_collector_image(ws.otel_contrib_dir, ws.runtime.engine)
    return 0


def cmd_update(ws: Workspace, args: argparse.Namespace) -> int:
    if cmd_build(ws, args) != 0:
        return 1
    log("Updating OTEL collector...")
    if ws.compose('up', '-d', 'collector') != 0:
        return 1
    log_success("Collector updated")
    time.sleep(UPDATE_WAIT_SECONDS)
    return ws.compose('logs', '--tail=20', 'collector')


def cmd_traffic(ws: Workspace, args: argparse.Namespace) -> int:
    script = ws.require_example_dir() / TRAFFIC_SCRIPT
    if not script.is_file():
        log_error("Traffic generator not found. Run setup_otel.py first.")
        return 1
    identifiers = [ws.env.get(var, '') for var in IDENTITY_ENV_VARS.values()]
    command = [str(script)] + identifiers
    if args.duration is not None:
        command.append(str(args.duration))
    log("Generating test traffic...")
    return run_command(command, cwd=ws.example_dir, capture=False).returncode


def prometheus_job_health(job: str = PROMETHEUS_JOB, get=None) -> list[str]:
    """Health values ('up', 'down', 'unknown') of the active targets of `job`."""
    response = (get or requests.get)(PROMETHEUS_TARGETS_URL, timeout=PROBE_TIMEOUT_SECONDS)
    data = response.json()
    targets = data.get('data', {}).get('activeTargets', [])
    return [t.get('health', 'unknown') for t in targets if t.get('labels', {}).get('job') == job]


def metric_names(lines: list[str]) -> list[str]:
    names = {line.split('{', 1)[0].split(' ', 1)[0] for line in lines if not line.startswith('#')}
    return sorted(names)


def cmd_validate(ws: Workspace, args: argparse.Namespace) -> int:
    failures = 0

    print("1. Checking service health...")
    for label, url in (('Prometheus:', PROMETHEUS_HEALTH_URL), ('Grafana:', GRAFANA_HEALTH_URL)):
        ok = probe(url)
        print(status_line(label, ok, 'Healthy', 'Not responding'))
        failures += not ok
    print()

    print("2. Validating Prometheus targets...")
    try:
        health = prometheus_job_health()
    except (requests.RequestException, ValueError) as e:
        log_error(f"Could not query Prometheus targets: {e}")
        health = []
    if 'up' in health:
        print(colour(GREEN, "  ✓ Prometheus is scraping OTEL metrics"))
    else:
        print(colour(RED, "  ✗ Prometheus not scraping OTEL metrics"))
        failures += 1
    print()

    print("3. Checking for Cloud Spanner metrics...")
    metrics = fetch_collector_metrics()
    lines = spanner_metric_lines(metrics or '')
    if lines:
        print(colour(GREEN, "  ✓ Cloud Spanner metrics present"))
        print()
        print("  Available metric types:")
        for name in metric_names(lines)[:20]:
            print(f"    {name}")
    else:
        print(colour(YELLOW, "  ⚠ No Cloud Spanner metrics yet (may need traffic)"))

    return 1 if failures else 0


def cmd_metrics(ws: Workspace, args: argparse.Namespace) -> int:
    print("OTEL Collector Metrics:")
    lines = spanner_metric_lines(fetch_collector_metrics() or '')
    if not lines:
        print("No Cloud Spanner metrics found")
        return 0
    for line in lines:
        print(line)
    return 0


def cmd_troubleshoot(ws: Workspace, args: argparse.Namespace) -> int:
    print("Running diagnostic checks...")
    print()

    print("1. Container Runtime:")
    if run_compose(ws.runtime, 'version', cwd=ws.example_dir if ws.example_dir.is_dir() else None).returncode != 0:
        print("   Compose command not working!")
    print()

    print("2. Port Availability:")
    for port in STACK_PORTS:
        state = colour(RED, 'In use') if port_in_use(port) else colour(GREEN, 'Available')
        print(f"   Port {port}: {state}")
    print()

    print("3. Directory Structure:")
    if ws.example_dir.is_dir():
        print(f"   Example repo: {colour(GREEN, 'Found')}")
    else:
        print(f"   Example repo: {colour(RED, 'Not found')} - Run setup_otel.py")
    if ws.otel_contrib_dir.is_dir():
        print(f"   OTEL repo:    {colour(GREEN, 'Found')} (dev mode)")
    else:
        print(f"   OTEL repo:    {colour(YELLOW, 'Not found')} (using pre-built images)")
    print()

    print("4. Configuration Files:")
    collector_config = ws.example_dir / 'collector' / 'config.yml'
    if collector_config.is_file():
        print(f"   Collector config: {colour(GREEN, 'Found')}")
        configured = 'project_id:' in collector_config.read_text(encoding='utf-8')
        print(f"   Project configured: {colour(GREEN, 'Yes') if configured else colour(RED, 'No')}")
    else:
        print(f"   Collector config: {colour(RED, 'Not found')}")
    print()

    print("5. Recent Collector Logs:")
    if ws.example_dir.is_dir():
        result = run_compose(ws.runtime, 'logs', '--tail=10', 'collector', cwd=ws.example_dir, capture=True)
        output = (result.stdout + result.stderr).strip()
        for line in output.splitlines() or ['No logs available']:
            print(f"   {line}")
    else:
        print("   No logs available")
    return 0


def stop_traffic_generator(example_dir: Path) -> Optional[int]:
    """Terminate the traffic generator recorded in its pid file, if any.

    Returns:
        The pid that was signalled
    """
    pid_file = example_dir / TRAFFIC_PID_FILE
    if not pid_file.is_file():
        return None
    try:
        pid = int(pid_file.read_text(encoding='utf-8').strip())
    except ValueError:
        log_warn(f"Ignoring malformed {TRAFFIC_PID_FILE}")
        pid_file.unlink(missing_ok=True)
        return None
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        log_warn(f"Traffic generator (pid {pid}) was not running")
    except PermissionError:
        log_warn(f"Not allowed to stop process {pid}; remove it manually")
    # The generator's exit trap may already have removed it
    pid_file.unlink(missing_ok=True)
    return pid


def cmd_clean(ws: Workspace, args: argparse.Namespace, prompt=read_input) -> int:
    print(colour(RED, "Cleaning up OTEL setup..."))
    if not args.yes:
        reply = prompt("This will remove all containers and volumes. Continue? [y/N] ").strip().lower()
        if reply not in ('y', 'yes'):
            print("Cleanup cancelled")
            return 0
    if ws.example_dir.is_dir():
        if ws.compose('down', '-v') != 0:
            log_warn(f"'{ws.runtime.display} down -v' failed")
        stop_traffic_generator(ws.example_dir)
    log_success("Cleanup complete")
    return 0


def cmd_health(ws: Workspace, args: argparse.Namespace) -> int:
    print('UP' if probe(COLLECTOR_METRICS_URL) else 'DOWN')
    return 0


def open_in_browser(name: str, url: str, login: Optional[str] = None) -> int:
    print(colour(GREEN, f"Opening {name}..."))
    print(f"URL: {url}")
    if login:
        print(f"Login: {login}")
    if not webbrowser.open(url):
        print(colour(YELLOW, f"Please open {url} in your browser"))
    return 0


def cmd_dash(ws: Workspace, args: argparse.Namespace) -> int:
    return open_in_browser('Grafana', GRAFANA_URL, login='admin / admin')


def cmd_prom(ws: Workspace, args: argparse.Namespace) -> int:
    return open_in_browser('Prometheus', PROMETHEUS_URL)


COMMANDS = {
    'start': (cmd_start, 'Start services and show status'),
    'stop': (cmd_stop, 'Stop services'),
    'restart': (cmd_restart, 'Restart services'),
    'status': (cmd_status, 'Show container status, health checks and metric count'),
    'logs': (cmd_logs, 'Follow service logs'),
    'build': (cmd_build, 'Build the OTEL collector from source (dev mode)'),
    'update': (cmd_update, 'Rebuild the collector and restart its container'),
    'traffic': (cmd_traffic, 'Generate test traffic against the database'),
    'validate': (cmd_validate, 'Check health, Prometheus scraping and Spanner metrics'),
    'metrics': (cmd_metrics, 'Print Cloud Spanner metrics exposed by the collector'),
    'troubleshoot': (cmd_troubleshoot, 'Run diagnostic checks'),
    'clean': (cmd_clean, 'Remove containers, volumes and the traffic generator'),
    'health': (cmd_health, 'Print UP or DOWN for the collector metrics endpoint'),
    'dash': (cmd_dash, 'Open Grafana in a browser'),
    'prom': (cmd_prom, 'Open Prometheus in a browser'),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Manage the OTEL Cloud Spanner receiver stack')
    subparsers = parser.add_subparsers(dest='command', required=True)
    for name, (_, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        if name == 'logs':
            sub.add_argument('service', nargs='?', choices=SERVICES,
                             help='Only show logs for this service')
        elif name == 'traffic':
            sub.add_argument('duration', nargs='?', type=int,
                             help='Duration in seconds (default 300)')
        elif name == 'clean':
            sub.add_argument('-y', '--yes', action='store_true',
                             help='Do not ask for confirmation')
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    handler, _ = COMMANDS[args.command]
    try:
        return handler(Workspace(os.environ), args)
    except SetupError as e:
        log_error(str(e))
        return 1
    except KeyboardInterrupt:
        print()
        return 1


if __name__ == '__main__':
    sys.exit(main())
