"""
Prerequisite checks for the OTEL Cloud Spanner setup.

- Required tools (git, curl) must be on PATH; all missing tools are reported at once.
- The compose runtime is resolved once: podman-compose when Podman is preferred
  and present, otherwise `docker compose` or docker-compose.
- A missing podman-compose is installed with pip on a best-effort basis.
"""

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from log_utils import SetupError, log, log_success, log_warn
from models import RuntimeSelection, StepResult

REQUIRED_TOOLS = ('git', 'curl')

PODMAN_INSTALL_URL = 'https://podman.io/getting-started/installation'
DOCKER_INSTALL_URL = 'https://docs.docker.com/get-docker/'

# pip --user installs land here
LOCAL_BIN_DIR = Path.home() / '.local' / 'bin'


def run_command(
    args: list[str],
    cwd: Optional[Path] = None,
    capture: bool = True,
    timeout: Optional[int] = None,
) -> subprocess.CompletedProcess:
    """Run an external command without raising on failure.

    A missing executable is reported as return code 127, like a shell would.
    With capture=False the command inherits the terminal so long-running
    output (clones, builds, compose) stays visible.
    """
    try:
        return subprocess.run(
            args,
            cwd=str(cwd) if cwd else None,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(args, 127, stdout='', stderr=str(e))


def check_required_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Raise SetupError naming every tool in `tools` that is not on PATH."""
    log("Checking prerequisites...")
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise SetupError(f"Missing required tools: {' '.join(missing)}")


def prepend_to_path(directory: Path) -> None:
    """Put `directory` first on this process's PATH (no-op if already there)."""
    entries = [e for e in os.environ.get('PATH', '').split(os.pathsep) if e]
    if str(directory) in entries:
        return
    os.environ['PATH'] = os.pathsep.join([str(directory)] + entries)


def install_podman_compose() -> StepResult:
    """Install podman-compose with pip --user. Never fatal."""
    pip = shutil.which('pip3') or shutil.which('pip')
    if pip is None:
        return StepResult.warning("pip not found. Please install podman-compose manually")

    result = run_command([pip, 'install', '--user', 'podman-compose'])
    prepend_to_path(LOCAL_BIN_DIR)
    if result.returncode != 0:
        detail = result.stderr.strip().splitlines()[-1:] or ['unknown error']
        return StepResult.warning(f"Failed to install podman-compose: {detail[0]}")
    return StepResult.ok("Installed podman-compose")


def detect_compose_runtime(
    use_podman: bool = True,
    compose_override: Optional[str] = None,
) -> RuntimeSelection:
    """Resolve the compose command for this run.

    Args:
        use_podman: Prefer Podman when it is installed
        compose_override: Command string (e.g. from COMPOSE_CMD) that replaces
            the detected command once a runtime has been found

    Raises:
        SetupError: If neither Podman nor Docker (with compose) is available
    """
    log("Setting up container runtime...")

    if use_podman and shutil.which('podman'):
        engine = 'podman'
        if not shutil.which('podman-compose'):
            log_warn("podman-compose not found. Installing...")
            result = install_podman_compose()
            if result.succeeded:
                log_success(result.message)
            else:
                log_warn(result.message)
        command = ('podman-compose',)
    elif shutil.which('docker'):
        engine = 'docker'
        if run_command(['docker', 'compose', 'version']).returncode == 0:
            command = ('docker', 'compose')
        elif shutil.which('docker-compose'):
            command = ('docker-compose',)
        else:
            raise SetupError("No docker-compose command found. Please install Docker Compose.")
    else:
        raise SetupError(
            "Neither Podman nor Docker found. Please install one:\n"
            f"  Podman: {PODMAN_INSTALL_URL}\n"
            f"  Docker: {DOCKER_INSTALL_URL}"
        )

    if compose_override and compose_override.strip():
        command = tuple(shlex.split(compose_override))

    runtime = RuntimeSelection(command=command, engine=engine)
    log_success(f"Using {runtime.display}")
    return runtime
