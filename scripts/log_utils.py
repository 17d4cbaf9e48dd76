"""
Console output helpers shared by the setup and operations scripts.

Progress goes to stdout with a timestamp; errors go to stderr.
"""

import sys
from datetime import datetime

RED = '\033[0;31m'
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
BLUE = '\033[0;34m'
NC = '\033[0m'


class SetupError(Exception):
    """Fatal setup condition. Caught once in main() and turned into exit code 1."""


def colour(code: str, text: str, stream=None) -> str:
    stream = stream or sys.stdout
    if hasattr(stream, 'isatty') and stream.isatty():
        return f"{code}{text}{NC}"
    return text


def log(message: str) -> None:
    timestamp = datetime.now().strftime('%H:%M:%S')
    print(f"{colour(BLUE, f'[{timestamp}]')} {message}")


def log_warn(message: str) -> None:
    print(f"{colour(YELLOW, '[WARN]')} {message}")


def log_success(message: str) -> None:
    print(f"{colour(GREEN, '[SUCCESS]')} {message}")


def log_error(message: str) -> None:
    print(f"{colour(RED, '[ERROR]', sys.stderr)} {message}", file=sys.stderr)
