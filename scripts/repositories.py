"""
Clone or update the example repository and, in dev mode, build the collector from source.
"""

from pathlib import Path
from typing import Optional

from log_utils import SetupError, log, log_success, log_warn
from models import EXAMPLE_DIR_NAME, OTEL_CONTRIB_DIR_NAME, SetupConfig, StepResult
from prerequisites import run_command
from render_configs import LOCAL_COLLECTOR_IMAGE

EXAMPLE_REPO = 'https://github.com/cloudspannerecosystem/OtelCloudSpannerReceiverExample.git'
OTEL_CONTRIB_REPO = 'https://github.com/open-telemetry/opentelemetry-collector-contrib.git'
DEFAULT_BRANCH = 'main'

BUILD_TARGET = 'docker-otelcontribcol'
BUILT_IMAGE = 'otelcontribcol:latest'


def run_git(args: list[str], cwd: Optional[Path] = None):
    """Run a git command; output stays on the terminal."""
    return run_command(['git'] + args, cwd=cwd, capture=False)


def clone_or_update(url: str, target: Path) -> StepResult:
    """Clone `url` into `target`, or pull when the checkout already exists.

    A failed pull is a warning and the existing checkout is used as-is.

    Raises:
        SetupError: If the clone fails
    """
    if target.is_dir():
        log(f"Updating {target.name}...")
        result = run_git(['pull', 'origin', DEFAULT_BRANCH], cwd=target)
        if result.returncode != 0:
            return StepResult.warning(f"Could not update {target.name}; using existing checkout")
        return StepResult.ok(f"Updated {target.name}")

    log(f"Cloning {target.name}...")
    result = run_git(['clone', url, str(target)])
    if result.returncode != 0:
        raise SetupError(f"Failed to clone {url}")
    return StepResult.ok(f"Cloned {target.name}")


def setup_repositories(work_dir: Path, dev_mode: bool = False, skip_clone: bool = False) -> list[StepResult]:
    """Make sure the example checkout (and the contrib checkout in dev mode) exists."""
    if skip_clone:
        log("Skipping repository cloning")
        return []

    log("Setting up repositories...")
    work_dir.mkdir(parents=True, exist_ok=True)

    results = [clone_or_update(EXAMPLE_REPO, work_dir / EXAMPLE_DIR_NAME)]
    if dev_mode:
        results.append(clone_or_update(OTEL_CONTRIB_REPO, work_dir / OTEL_CONTRIB_DIR_NAME))

    for result in results:
        if result.succeeded:
            log_success(result.message)
        else:
            log_warn(result.message)
    return results


def build_collector_image(contrib_dir: Path, engine: str) -> None:
    """Run `make docker-otelcontribcol` and tag the result as the local collector image.

    Raises:
        SetupError: If the contrib checkout is missing or the build/tag fails
    """
    if not contrib_dir.is_dir():
        raise SetupError(f"OTEL contrib directory not found: {contrib_dir}")

    log("Building OTEL collector from source (this may take a while)...")
    result = run_command(['make', BUILD_TARGET], cwd=contrib_dir, capture=False)
    if result.returncode != 0:
        raise SetupError(f"'make {BUILD_TARGET}' failed with exit code {result.returncode}")

    result = run_command([engine, 'tag', BUILT_IMAGE, LOCAL_COLLECTOR_IMAGE])
    if result.returncode != 0:
        raise SetupError(f"Failed to tag {BUILT_IMAGE} as {LOCAL_COLLECTOR_IMAGE}: {result.stderr.strip()}")

    log_success(f"Built {LOCAL_COLLECTOR_IMAGE}")


def build_otel_collector(config: SetupConfig, skip_build: bool = False) -> bool:
    """Build the local collector image in dev mode unless --skip-build was given.

    Returns:
        True if an image was built
    """
    if not config.dev_mode or skip_build:
        return False
    build_collector_image(config.otel_contrib_dir, config.runtime.engine)
    return True
