"""Resolve the effective runtime configuration of the entrypoint.

Two sources feed :class:`RuntimeConfig`:

* the ``mysqld --verbose --help`` dump, which reports the data directory and
  socket path the server will actually use once every option file and
  command-line flag has been applied;
* the ``MYSQL_*`` environment variables, each of which may instead be
  supplied through a ``MYSQL_*_FILE`` path (Docker secrets).
"""

from __future__ import annotations

import os
import re
import subprocess
import tempfile
import textwrap
import uuid
from dataclasses import dataclass
from typing import MutableMapping, Optional, Sequence

from mysql_entrypoint.runtime import ConfigCheckError, ConfigError, warn

ROOT_USER = 'root'
DEFAULT_ROOT_HOST = '%'

# Options every usable help dump reports a value for.
REQUIRED_SERVER_OPTIONS = ('datadir', 'socket')

# Environment variable -> RuntimeConfig field.  Every variable also accepts
# the ``<NAME>_FILE`` indirection.
STRING_VARIABLES = {
    'MYSQL_ROOT_HOST': 'root_host',
    'MYSQL_DATABASE': 'database',
    'MYSQL_USER': 'user',
    'MYSQL_PASSWORD': 'password',
    'MYSQL_ROOT_PASSWORD': 'root_password',
}
FLAG_VARIABLES = {
    'MYSQL_ALLOW_EMPTY_PASSWORD': 'allow_empty_password',
    'MYSQL_RANDOM_ROOT_PASSWORD': 'random_root_password',
    'MYSQL_INITDB_SKIP_TZINFO': 'skip_tzinfo',
    'MYSQL_ONETIME_PASSWORD': 'onetime_password',
}

# Matches "datadir      /some/path with/spaces in/it here" but not an
# indented continuation line such as "     datadir (xyz)".
_CONFIG_LINE_PATTERN = re.compile(r'^(?P<key>[^ \t]+)(?:[ \t]+(?P<value>.*))?$')

_MISSING_PASSWORD_OPTION = textwrap.dedent(
    """
    Database is uninitialized and password option is not specified
        You need to specify one of the following as an environment variable:
        - MYSQL_ROOT_PASSWORD
        - MYSQL_ALLOW_EMPTY_PASSWORD
        - MYSQL_RANDOM_ROOT_PASSWORD
    """
).strip()

_ROOT_USER_REJECTED = textwrap.dedent(
    """
    MYSQL_USER="root", MYSQL_USER and MYSQL_PASSWORD are for configuring a regular user and cannot be used for the root user
        Remove MYSQL_USER="root" and use one of the following to control the root user password:
        - MYSQL_ROOT_PASSWORD
        - MYSQL_ALLOW_EMPTY_PASSWORD
        - MYSQL_RANDOM_ROOT_PASSWORD
    """
).strip()


@dataclass(frozen=True)
class RuntimeConfig:
    """Resolved configuration, built once per invocation."""

    datadir: str
    socket: str
    root_host: str = DEFAULT_ROOT_HOST
    database: str = ''
    user: str = ''
    password: str = ''
    root_password: str = ''
    allow_empty_password: bool = False
    random_root_password: bool = False
    skip_tzinfo: bool = False
    onetime_password: bool = False


def verbose_help_args() -> list[str]:
    """Return the flags that make ``mysqld`` dump its effective configuration.

    ``--log-bin-index`` points at a unique path that is never created so the
    dump cannot fail or leave files behind when binary logging is enabled.
    """

    index_path = os.path.join(tempfile.gettempdir(), f'tmp.{uuid.uuid4().hex[:10]}')
    return ['--verbose', '--help', f'--log-bin-index={index_path}']


def check_config(command: Sequence[str]) -> None:
    """Fail with :class:`ConfigCheckError` when ``mysqld`` rejects its flags."""

    to_run = [*command, *verbose_help_args()]
    try:
        result = subprocess.run(
            to_run,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        returncode, errors = 127, str(exc)
    else:
        returncode, errors = result.returncode, result.stderr or ''

    if returncode != 0:
        raise ConfigCheckError(
            'mysqld failed while attempting to check config\n'
            f'\tcommand was: {" ".join(to_run)}\n'
            f'\t{errors.strip()}'
        )


def load_help_output(command: Sequence[str]) -> str:
    """Return the ``--verbose --help`` dump of ``command`` (stderr discarded)."""

    to_run = [*command, *verbose_help_args()]
    try:
        result = subprocess.run(
            to_run,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
    except OSError as exc:
        raise ConfigCheckError(
            'mysqld failed while attempting to read config\n'
            f'\tcommand was: {" ".join(to_run)}\n'
            f'\t{exc}'
        ) from exc
    return result.stdout or ''


def extract_config(output: str, key: str) -> str:
    """Return the value of ``key`` from a help dump, or ``''`` when absent."""

    for line in output.splitlines():
        if not line or line[0] in ' \t':
            continue
        match = _CONFIG_LINE_PATTERN.match(line)
        if match is None or match.group('key') != key:
            continue
        return match.group('value') or ''
    return ''


def get_config(key: str, command: Sequence[str]) -> str:
    return extract_config(load_help_output(command), key)


def file_env(
    name: str,
    environ: Optional[MutableMapping[str, str]] = None,
    default: str = '',
) -> str:
    """Resolve ``name`` from the environment or from the file in ``<name>_FILE``.

    Empty values count as unset.  File contents lose their trailing newlines,
    the same way shell command substitution reads a secret file.
    """

    environ = os.environ if environ is None else environ
    file_name = f'{name}_FILE'
    value = environ.get(name) or ''
    file_path = environ.get(file_name) or ''

    if value and file_path:
        raise ConfigError(f'Both {name} and {file_name} are set (but are exclusive)')
    if value:
        return value
    if file_path:
        try:
            with open(file_path, encoding='utf-8') as handle:
                return handle.read().rstrip('\n')
        except OSError as exc:
            raise ConfigError(f'Unable to read {file_name} ({file_path}): {exc}') from exc
    return default


def resolve_runtime_config(
    help_output: str,
    environ: Optional[MutableMapping[str, str]] = None,
    command: Sequence[str] = (),
) -> RuntimeConfig:
    """Build the :class:`RuntimeConfig` from a help dump and the environment.

    A dump without a ``datadir`` or ``socket`` value is rejected; ``command``
    only appears in that error.
    """

    environ = os.environ if environ is None else environ
    values: dict[str, object] = {}
    for key in REQUIRED_SERVER_OPTIONS:
        value = extract_config(help_output, key)
        if not value:
            raise ConfigCheckError(
                'mysqld failed while attempting to read config\n'
                f'\tcommand was: {" ".join([*command, "--verbose", "--help"])}\n'
                f'\tno {key} value in the --verbose --help output'
            )
        values[key] = value
    for name, field in STRING_VARIABLES.items():
        default = DEFAULT_ROOT_HOST if name == 'MYSQL_ROOT_HOST' else ''
        values[field] = file_env(name, environ, default)
    for name, field in FLAG_VARIABLES.items():
        values[field] = bool(file_env(name, environ))
    return RuntimeConfig(**values)


def export_environment(
    config: RuntimeConfig,
    environ: Optional[MutableMapping[str, str]] = None,
) -> None:
    """Publish resolved values and drop every ``*_FILE`` indirection.

    The orchestrator re-executes itself after dropping privileges and the
    secret files are usually unreadable by the service account, so the
    resolved values have to travel through the environment.
    """

    environ = os.environ if environ is None else environ
    for name, field in STRING_VARIABLES.items():
        value = getattr(config, field)
        if value:
            environ[name] = value
        else:
            environ.pop(name, None)
    for name, field in FLAG_VARIABLES.items():
        if getattr(config, field) and not environ.get(name):
            environ[name] = '1'
    for name in (*STRING_VARIABLES, *FLAG_VARIABLES):
        environ.pop(f'{name}_FILE', None)


def verify_minimum_env(config: RuntimeConfig) -> None:
    """Validate the environment before a fresh data directory is initialized."""

    if not (
        config.root_password
        or config.allow_empty_password
        or config.random_root_password
    ):
        raise ConfigError(_MISSING_PASSWORD_OPTION)

    if config.user == ROOT_USER:
        raise ConfigError(_ROOT_USER_REJECTED)

    if config.user and not config.password:
        warn('MYSQL_USER specified, but missing MYSQL_PASSWORD; MYSQL_USER will not be created')
    elif not config.user and config.password:
        warn('MYSQL_PASSWORD specified, but missing MYSQL_USER; MYSQL_PASSWORD will be ignored')
