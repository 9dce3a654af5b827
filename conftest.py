import os
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parent

if Path.cwd() != PROJECT_ROOT:
    os.chdir(PROJECT_ROOT)

# Variables read by the entrypoint; a developer shell must not leak into tests.
_ENTRYPOINT_VARIABLES = (
    'MYSQL_ROOT_PASSWORD',
    'MYSQL_ALLOW_EMPTY_PASSWORD',
    'MYSQL_RANDOM_ROOT_PASSWORD',
    'MYSQL_ROOT_HOST',
    'MYSQL_DATABASE',
    'MYSQL_USER',
    'MYSQL_PASSWORD',
    'MYSQL_INITDB_SKIP_TZINFO',
    'MYSQL_ONETIME_PASSWORD',
)


@pytest.fixture(autouse=True)
def _clean_mysql_environment(monkeypatch):
    for name in _ENTRYPOINT_VARIABLES:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f'{name}_FILE', raising=False)


def render_help_output(variables):
    """Return text shaped like ``mysqld --verbose --help`` for ``variables``."""

    lines = [
        'mysqld  Ver 8.0.36 for Linux on x86_64 (MySQL Community Server - GPL)',
        'Usage: mysqld [OPTIONS]',
        '',
        '  --datadir=name      Path to the database root directory',
        '  --socket=name       Socket file to use for connection',
        '     datadir (overridden below)',
        '',
        'Variables (--variable-name=value)',
        'and boolean options {FALSE|TRUE}                             Value (after reading options)',
        '------------------------------------------------------------ -------------',
    ]
    for key, value in variables.items():
        lines.append(f'{key:<60} {value}')
    lines.append('')
    return '\n'.join(lines)


@pytest.fixture
def help_output_factory():
    return render_help_output
