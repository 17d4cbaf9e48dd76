#!/usr/bin/env python3
"""
Automated setup for the OTEL Cloud Spanner receiver with a compose stack.

Usage:
    python scripts/setup_otel.py                          # prompts for missing values
    python scripts/setup_otel.py -p my-project -i my-instance -d my-db -k /path/to/key.json
    python scripts/setup_otel.py -p my-project -i my-instance -d my-db -k ADC
    python scripts/setup_otel.py --dev-mode               # build the collector from source
    python scripts/setup_otel.py --cleanup                # compose down -v

Environment:
    SPANNER_PROJECT_ID, SPANNER_INSTANCE_ID, SPANNER_DATABASE_ID
    SERVICE_ACCOUNT_KEY_PATH, SERVICE_ACCOUNT_EMAIL
    OTEL_WORK_DIR (default: current directory), USE_PODMAN, DEV_MODE, COMPOSE_CMD
"""

import argparse
import os
import sys
from typing import Mapping, Optional

from config_collector import collect_configuration, env_flag, resolve_work_dir
from helper_scripts import create_helper_scripts
from launcher import apply_health_policy, start_services, stop_services
from log_utils import BLUE, GREEN, YELLOW, SetupError, colour, log, log_error, log_success
from models import EXAMPLE_DIR_NAME, HealthPolicy, SetupConfig
from prerequisites import check_required_tools, detect_compose_runtime
from render_configs import update_configurations
from repositories import build_otel_collector, setup_repositories

SCRIPT_VERSION = '3.0.0'


class SetupArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad usage."""

    def error(self, message):
        self.print_usage(sys.stderr)
        log_error(message)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = SetupArgumentParser(
        description='Automated setup for OTEL Cloud Spanner Receiver with docker-compose.',
    )
    parser.add_argument('-p', '--project', help='GCP Project ID')
    parser.add_argument('-i', '--instance', help='Cloud Spanner Instance ID')
    parser.add_argument('-d', '--database', help='Cloud Spanner Database ID')
    parser.add_argument('-k', '--service-account-key', metavar='PATH',
                        help="Path to service account key JSON, or 'ADC' for Application Default Credentials")
    parser.add_argument('-e', '--service-account-email', metavar='EMAIL',
                        help='Service account email (for Cloud Monitoring)')
    parser.add_argument('--dev-mode', action='store_true', default=None,
                        help='Enable development mode (builds local OTEL)')
    parser.add_argument('--use-docker', action='store_true',
                        help='Use Docker instead of Podman')
    parser.add_argument('--skip-clone', action='store_true',
                        help='Skip cloning repositories')
    parser.add_argument('--skip-build', action='store_true',
                        help='Skip building OTEL (dev mode only)')
    parser.add_argument('--cleanup', action='store_true',
                        help='Stop services and remove their volumes')
    parser.add_argument('--strict-health', action='store_true',
                        help='Fail the setup when Prometheus or Grafana is unhealthy after start')
    return parser


def show_completion_message(config: SetupConfig) -> None:
    rule = colour(GREEN, '=' * 48)
    print()
    print(rule)
    print(colour(GREEN, 'OTEL Cloud Spanner Receiver Setup Complete!'))
    print(rule)
    print()
    print(colour(BLUE, 'Configuration Summary:'))
    print(f"  Project:       {config.identity.project_id}")
    print(f"  Instance:      {config.identity.instance_id}")
    print(f"  Database:      {config.identity.database_id}")
    print(f"  Runtime:       {config.runtime.display}")
    print(f"  Credentials:   {'Application Default Credentials' if config.credentials.uses_adc else config.credentials.key_path}")
    print()
    print(colour(BLUE, 'Access Points:'))
    print(f"  Prometheus:    {colour(GREEN, 'http://localhost:9090')}")
    print(f"  Grafana:       {colour(GREEN, 'http://localhost:3000')} (admin/admin)")
    print(f"  OTEL Metrics:  {colour(GREEN, 'http://localhost:8889/metrics')}")
    print()
    print(colour(BLUE, 'Quick Commands:'))
    print(f"  Check status:     {colour(YELLOW, './check-status.sh')}")
    print(f"  View logs:        {colour(YELLOW, './view-logs.sh')}")
    print(f"  Restart:          {colour(YELLOW, './restart-services.sh')}")
    print(f"  Generate traffic: {colour(YELLOW, './generate-traffic.sh')}")
    if config.dev_mode:
        print(f"  Rebuild OTEL:     {colour(YELLOW, './update-otel.sh')}")
    print()
    print(colour(BLUE, 'Directory:'))
    print(f"  {colour(YELLOW, f'cd {config.example_dir}')}")


def run_cleanup(args: argparse.Namespace, environ: Mapping[str, str]) -> None:
    log("Cleaning up OTEL setup...")
    runtime = detect_compose_runtime(
        use_podman=not args.use_docker and env_flag(environ, 'USE_PODMAN', True),
        compose_override=environ.get('COMPOSE_CMD'),
    )
    example_dir = resolve_work_dir(environ) / EXAMPLE_DIR_NAME
    if not example_dir.is_dir():
        raise SetupError(f"Example directory not found: {example_dir}")
    log("Stopping services...")
    if not stop_services(runtime, example_dir, remove_volumes=True):
        raise SetupError(f"'{runtime.display} down -v' failed")
    log_success("Cleanup completed")


def run_setup(args: argparse.Namespace, environ: Mapping[str, str], interactive: bool) -> SetupConfig:
    """The setup flow, in order. Any SetupError aborts the run."""
    dev_mode = args.dev_mode if args.dev_mode is not None else env_flag(environ, 'DEV_MODE')
    work_dir = resolve_work_dir(environ)

    check_required_tools()
    runtime = detect_compose_runtime(
        use_podman=not args.use_docker and env_flag(environ, 'USE_PODMAN', True),
        compose_override=environ.get('COMPOSE_CMD'),
    )

    setup_repositories(work_dir, dev_mode=dev_mode, skip_clone=args.skip_clone)

    cli_values = {
        'project_id': args.project,
        'instance_id': args.instance,
        'database_id': args.database,
        'service_account_key': args.service_account_key,
        'service_account_email': args.service_account_email,
    }
    identity, credentials = collect_configuration(
        cli_values,
        environ,
        work_dir / EXAMPLE_DIR_NAME,
        allow_prompt=interactive,
    )
    config = SetupConfig(
        identity=identity,
        credentials=credentials,
        runtime=runtime,
        dev_mode=dev_mode,
        work_dir=work_dir,
    )

    update_configurations(config)
    build_otel_collector(config, skip_build=args.skip_build)

    report = start_services(config)
    policy = HealthPolicy.STRICT if args.strict_health else HealthPolicy.ADVISORY
    apply_health_policy(report, policy)

    create_helper_scripts(config)
    show_completion_message(config)
    log_success("Setup completed successfully!")
    return config


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    environ = os.environ

    log(f"OTEL Cloud Spanner Receiver Setup v{SCRIPT_VERSION}")
    print()

    try:
        if args.cleanup:
            run_cleanup(args, environ)
        else:
            run_setup(args, environ, interactive=sys.stdin.isatty())
    except SetupError as e:
        log_error(str(e))
        log_error("Setup failed.")
        return 1
    except KeyboardInterrupt:
        print()
        log_error("Setup interrupted.")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
