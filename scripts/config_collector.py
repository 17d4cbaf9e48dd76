"""
Collect the Cloud Spanner target and credentials for a setup run.

Identifiers come from CLI flags, the environment, or interactive prompts.
Credentials are an existing service account key, Application Default
Credentials (ADC), or a new key created through gcloud.
"""

import json
import os
import shutil
from pathlib import Path
from typing import Callable, Mapping, Optional

from pydantic import ValidationError

from log_utils import SetupError, log, log_success, log_warn
from models import ADC_SENTINEL, CredentialReference, StepResult, TargetIdentity
from prerequisites import run_command

IDENTITY_ENV_VARS = {
    'project_id': 'SPANNER_PROJECT_ID',
    'instance_id': 'SPANNER_INSTANCE_ID',
    'database_id': 'SPANNER_DATABASE_ID',
}

IDENTITY_PROMPTS = {
    'project_id': 'Enter GCP Project ID: ',
    'instance_id': 'Enter Cloud Spanner Instance ID: ',
    'database_id': 'Enter Cloud Spanner Database ID: ',
}

KEY_PATH_ENV_VAR = 'SERVICE_ACCOUNT_KEY_PATH'
EMAIL_ENV_VAR = 'SERVICE_ACCOUNT_EMAIL'
WORK_DIR_ENV_VAR = 'OTEL_WORK_DIR'

TRUE_VALUES = ('true', '1', 'yes', 'on')

SERVICE_ACCOUNT_NAME = 'otel-spanner-reader'
SERVICE_ACCOUNT_DISPLAY_NAME = 'OTEL Spanner Reader'
SERVICE_ACCOUNT_ROLES = (
    'roles/spanner.databaseReader',
    'roles/monitoring.metricWriter',
    'roles/monitoring.viewer',
)
KEY_FILENAME = 'service-account-key.json'

Prompt = Callable[[str], str]


def read_input(message: str) -> str:
    """input() that treats a closed stdin as an empty answer."""
    try:
        return input(message)
    except EOFError:
        return ''


def read_key_field(key_path: Path, field: str) -> str:
    """Return a string field from a service account key JSON, or '' if absent/unreadable."""
    try:
        data = json.loads(key_path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        return ''
    if not isinstance(data, dict):
        return ''
    value = data.get(field)
    return value if isinstance(value, str) else ''


def env_flag(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    """Read a boolean environment variable (true/1/yes/on); unset or blank gives `default`."""
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUE_VALUES


def resolve_work_dir(environ: Mapping[str, str]) -> Path:
    return Path(environ.get(WORK_DIR_ENV_VAR) or os.getcwd()).expanduser().resolve()


def load_env_file(path: Path) -> dict[str, str]:
    """Load key=value pairs from a .env file.

    Ignores comments (#) and empty lines.
    Does not handle variable expansion.
    """
    env_vars = {}
    if not path.exists():
        return env_vars
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if '=' in line:
            key, _, value = line.partition('=')
            value = value.strip()
            # Strip surrounding quotes (single or double)
            if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
                value = value[1:-1]
            env_vars[key.strip()] = value
    return env_vars


def resolve_identity(
    cli_values: Mapping[str, Optional[str]],
    environ: Mapping[str, str],
    prompt: Prompt = read_input,
    allow_prompt: bool = True,
) -> TargetIdentity:
    """Resolve project, instance and database IDs.

    When all three SPANNER_* environment variables are set they are used as-is
    and nothing is prompted. Otherwise a CLI value beats the environment value
    for each identifier, and any identifier still empty is prompted for.

    Raises:
        SetupError: If an identifier is still empty afterwards
    """
    env_values = {field: environ.get(var, '').strip() for field, var in IDENTITY_ENV_VARS.items()}
    cli_values = {field: (cli_values.get(field) or '').strip() for field in IDENTITY_ENV_VARS}

    if all(env_values.values()) and not any(cli_values.values()):
        log("Using environment variables for configuration")
        values = env_values
    else:
        values = {}
        for field in IDENTITY_ENV_VARS:
            value = cli_values[field] or env_values[field]
            if not value and allow_prompt:
                value = prompt(IDENTITY_PROMPTS[field]).strip()
            values[field] = value

    missing = [IDENTITY_ENV_VARS[field] for field, value in values.items() if not value]
    if missing:
        raise SetupError(f"Missing required configuration: {', '.join(missing)}")

    try:
        return TargetIdentity(**values)
    except ValidationError as e:
        raise SetupError(f"Invalid configuration: {e}") from e


def credential_from_value(value: str) -> CredentialReference:
    """Turn a --service-account-key value into a CredentialReference."""
    value = value.strip()
    if value == ADC_SENTINEL:
        return CredentialReference()
    key_path = Path(value).expanduser()
    if not key_path.is_file():
        raise SetupError(f"File not found: {value}")
    return CredentialReference(key_path=key_path.resolve())


def _gcloud_step(args: list[str], description: str, tolerated: str = '') -> StepResult:
    result = run_command(['gcloud'] + args)
    if result.returncode == 0:
        return StepResult.ok(description)
    stderr = result.stderr.strip()
    if tolerated and tolerated in stderr.lower():
        return StepResult.ok(f"{description} ({tolerated})")
    return StepResult.warning(f"{description} failed: {stderr or f'exit code {result.returncode}'}")


def create_service_account_key(project_id: str, key_file: Path) -> CredentialReference:
    """Create the otel-spanner-reader service account, grant its roles and write a key.

    A service account that already exists counts as created. Failed role
    grants are warnings. A missing gcloud CLI or a key file that was not
    written is fatal.
    """
    log("Creating service account key...")
    if shutil.which('gcloud') is None:
        raise SetupError("gcloud CLI not found. Please install Google Cloud SDK")

    email = f"{SERVICE_ACCOUNT_NAME}@{project_id}.iam.gserviceaccount.com"

    steps = [_gcloud_step(
        ['iam', 'service-accounts', 'create', SERVICE_ACCOUNT_NAME,
         f'--display-name={SERVICE_ACCOUNT_DISPLAY_NAME}', f'--project={project_id}'],
        f"Create service account {SERVICE_ACCOUNT_NAME}",
        tolerated='already exists',
    )]

    log("Granting required permissions...")
    for role in SERVICE_ACCOUNT_ROLES:
        steps.append(_gcloud_step(
            ['projects', 'add-iam-policy-binding', project_id,
             f'--member=serviceAccount:{email}', f'--role={role}', '--quiet'],
            f"Grant {role}",
        ))

    for step in steps:
        if not step.succeeded:
            log_warn(step.message)

    key_file.parent.mkdir(parents=True, exist_ok=True)
    result = run_command([
        'gcloud', 'iam', 'service-accounts', 'keys', 'create', str(key_file),
        f'--iam-account={email}', f'--project={project_id}',
    ])
    if result.returncode != 0 or not key_file.is_file():
        raise SetupError(f"Service account key was not created: {result.stderr.strip()}")

    log_success(f"Service account key created: {key_file}")
    return CredentialReference(key_path=key_file, email=email)


def prompt_for_credentials(project_id: str, key_file: Path, prompt: Prompt = read_input) -> CredentialReference:
    """Ask the operator how the collector should authenticate."""
    print()
    print("Service Account Key options:")
    print("1. Use existing key file")
    print("2. Use Application Default Credentials (ADC)")
    print("3. Create new service account key")
    choice = prompt("Choose option [1-3]: ").strip()

    if choice == '1':
        return credential_from_value(prompt("Enter path to service account key JSON: "))
    if choice == '2':
        return CredentialReference()
    if choice == '3':
        return create_service_account_key(project_id, key_file)
    raise SetupError(f"Invalid option: {choice or '(empty)'}")


def resolve_credentials(
    key_value: Optional[str],
    email_value: Optional[str],
    project_id: str,
    key_file: Path,
    prompt: Prompt = read_input,
    allow_prompt: bool = True,
) -> CredentialReference:
    """Resolve the credential reference and, where possible, its email.

    Args:
        key_value: Key path or 'ADC' from the CLI/environment, if any
        email_value: Service account email from the CLI/environment, if any
        project_id: Project used when a new service account is created
        key_file: Where a newly created key is written
        prompt: Input function for interactive questions
        allow_prompt: False for non-interactive runs (falls back to ADC)
    """
    if key_value and key_value.strip():
        credentials = credential_from_value(key_value)
    elif allow_prompt:
        credentials = prompt_for_credentials(project_id, key_file, prompt)
    else:
        log("No service account key given; using Application Default Credentials")
        credentials = CredentialReference()

    email = (email_value or '').strip() or credentials.email
    if not email and not credentials.uses_adc:
        email = read_key_field(credentials.key_path, 'client_email')
        if email:
            log(f"Detected service account email: {email}")
    if not email and not credentials.uses_adc and allow_prompt:
        print()
        email = prompt("Enter service account email (for Cloud Monitoring, or press Enter to skip): ").strip()

    return CredentialReference(key_path=credentials.key_path, email=email)


def collect_configuration(
    cli_values: Mapping[str, Optional[str]],
    environ: Mapping[str, str],
    example_dir: Path,
    prompt: Prompt = read_input,
    allow_prompt: bool = True,
) -> tuple[TargetIdentity, CredentialReference]:
    """Collect identity and credentials; the collector's only entry point for main()."""
    log("Collecting configuration...")
    identity = resolve_identity(cli_values, environ, prompt, allow_prompt)
    credentials = resolve_credentials(
        cli_values.get('service_account_key') or environ.get(KEY_PATH_ENV_VAR),
        cli_values.get('service_account_email') or environ.get(EMAIL_ENV_VAR),
        identity.project_id,
        example_dir / 'collector' / KEY_FILENAME,
        prompt,
        allow_prompt,
    )
    return identity, credentials
