"""Shared fixtures: fake subprocess runner, fake PATH lookup and fake HTTP."""

import shutil
import subprocess
import sys
from pathlib import Path

import pytest
import requests

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / 'scripts'
sys.path.insert(0, str(SCRIPTS_DIR))


class FakeRunner:
    """Stands in for subprocess.run and answers by command prefix."""

    def __init__(self):
        self.calls = []
        self.responses = []

    def respond(self, prefix, returncode=0, stdout='', stderr='', effect=None):
        """Register a reply for commands starting with `prefix`; later registrations win."""
        self.responses.append((tuple(prefix), returncode, stdout, stderr, effect))

    def __call__(self, args, cwd=None, capture_output=False, text=False, timeout=None):
        args = list(args)
        self.calls.append((args, cwd))
        for prefix, returncode, stdout, stderr, effect in reversed(self.responses):
            if tuple(args[:len(prefix)]) == prefix:
                if effect is not None:
                    effect(args)
                return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)
        return subprocess.CompletedProcess(args, 0, stdout='', stderr='')

    @property
    def commands(self):
        return [args for args, _ in self.calls]

    def cwd_of(self, prefix):
        for args, cwd in self.calls:
            if tuple(args[:len(prefix)]) == tuple(prefix):
                return cwd
        return None


class FakeResponse:
    def __init__(self, status_code=200, text='', payload=None):
        self.status_code = status_code
        self.text = text
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON body')
        return self._payload


class FakeHttp:
    """Stands in for requests.get; unknown URLs raise ConnectionError."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def route(self, url, status_code=200, text='', payload=None):
        self.routes[url] = FakeResponse(status_code, text, payload)

    def __call__(self, url, timeout=None, **kwargs):
        self.calls.append((url, timeout))
        if url not in self.routes:
            raise requests.exceptions.ConnectionError(f'Connection refused: {url}')
        return self.routes[url]


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRunner()
    monkeypatch.setattr(subprocess, 'run', runner)
    return runner


@pytest.fixture
def available_tools(monkeypatch):
    """Set of executable names shutil.which will find."""
    tools = set()
    monkeypatch.setattr(shutil, 'which', lambda name: f'/usr/bin/{name}' if name in tools else None)
    return tools


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHttp()
    monkeypatch.setattr(requests, 'get', http)
    return http


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr('time.sleep', delays.append)
    return delays
