"""Run the user-supplied scripts from ``/docker-entrypoint-initdb.d``.

Scripts are dispatched on their file name:

* ``*.sh`` - executed when executable, otherwise sourced (see below);
* ``*.sql`` - piped into the ``mysql`` client;
* ``*.sql.bz2``, ``*.sql.gz``, ``*.sql.xz``, ``*.sql.zst`` - decompressed
  by the matching codec and piped into the client;
* anything else is ignored with a warning.

Sourcing a non-executable shell script cannot change the state of a Python
process directly.  Instead the script is sourced by ``bash`` and the
environment it leaves behind is merged back, so exported variables still
reach the scripts that follow and the final server.  The sourcing shell
defines ``docker_process_sql``, the ``mysql`` array and the ``mysql_note``
family, so such scripts can still run SQL against the temporary server.
"""

from __future__ import annotations

import enum
import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from typing import MutableMapping, Optional

from mysql_entrypoint.config import RuntimeConfig
from mysql_entrypoint.runtime import CommandError, InitScriptsPermissionError, note, run_command, warn
from mysql_entrypoint.server import MYSQL_CLIENT, pipe_into_sql, process_sql

INITDB_DIR = '/docker-entrypoint-initdb.d'
BASH = 'bash'

DECOMPRESSORS = {
    '.sql.bz2': ('bunzip2', '-c'),
    '.sql.gz': ('gunzip', '-c'),
    '.sql.xz': ('xzcat',),
    '.sql.zst': ('zstd', '-dc'),
}

# Sourced scripts run with the helpers the shell entrypoint used to offer:
# the mysql_* log functions, docker_process_sql and the ``mysql`` array.
# Arguments: script, environment descriptor, socket, datadir, client binary.
_SOURCE_WRAPPER = textwrap.dedent(
    r'''
    set -eo pipefail
    __entrypoint_script="$1" __entrypoint_env_fd="$2"
    SOCKET="$3" DATADIR="$4" __entrypoint_client="$5"
    set --

    mysql_log() {
        local type="$1"; shift
        local text="$*"; if [ "$#" -eq 0 ]; then text="$(cat)"; fi
        printf '%s [%s] [Entrypoint]: %s\n' "$(date --rfc-3339=seconds)" "$type" "$text"
    }
    mysql_note() { mysql_log Note "$@"; }
    mysql_warn() { mysql_log Warn "$@" >&2; }
    mysql_error() { mysql_log ERROR "$@" >&2; exit 1; }

    _mysql_passfile() {
        if [ '--dont-use-mysql-root-password' != "${1:-}" ] && [ -n "${MYSQL_ROOT_PASSWORD:-}" ]; then
            printf '[client]\npassword="%s"\n' "$(printf '%s' "$MYSQL_ROOT_PASSWORD" | sed -e 's/[\\"]/\\&/g')"
        fi
    }

    docker_process_sql() {
        local passfileArgs=()
        if [ '--dont-use-mysql-root-password' = "${1:-}" ]; then
            passfileArgs+=( "$1" )
            shift
        fi
        if [ -n "${MYSQL_DATABASE:-}" ]; then
            set -- --database="$MYSQL_DATABASE" "$@"
        fi
        "$__entrypoint_client" --defaults-extra-file=<(_mysql_passfile "${passfileArgs[@]}") \
            --protocol=socket -uroot -hlocalhost --socket="$SOCKET" --comments "$@"
    }
    mysql=( docker_process_sql )

    . "$__entrypoint_script"
    env -0 >&"$__entrypoint_env_fd"
    '''
)

# Maintained by bash itself; never part of a script's environment delta.
_SHELL_VARIABLES = frozenset({'_', 'SHLVL', 'PWD', 'OLDPWD'})


class InitScriptKind(enum.Enum):
    EXECUTABLE_SHELL = 'executable shell'
    SOURCED_SHELL = 'sourced shell'
    PLAIN_SQL = 'sql'
    COMPRESSED_SQL = 'compressed sql'
    SKIP = 'skip'


@dataclass(frozen=True)
class InitScriptEntry:
    path: str
    kind: InitScriptKind
    codec: tuple[str, ...] = ()


def classify_init_script(path: str) -> InitScriptEntry:
    name = os.path.basename(path)
    if name.endswith('.sh'):
        if os.access(path, os.X_OK):
            return InitScriptEntry(path, InitScriptKind.EXECUTABLE_SHELL)
        return InitScriptEntry(path, InitScriptKind.SOURCED_SHELL)
    if name.endswith('.sql'):
        return InitScriptEntry(path, InitScriptKind.PLAIN_SQL)
    for suffix, codec in DECOMPRESSORS.items():
        if name.endswith(suffix):
            return InitScriptEntry(path, InitScriptKind.COMPRESSED_SQL, codec)
    return InitScriptEntry(path, InitScriptKind.SKIP)


def check_init_dir(path: str = INITDB_DIR) -> None:
    """Fail early when the directory cannot be listed.

    Otherwise a permissions mistake would silently skip every script and
    leave a half-initialized database behind.
    """

    try:
        os.listdir(path)
    except OSError as exc:
        raise InitScriptsPermissionError(f'Unable to list init scripts in {path}: {exc}') from exc


def discover_init_scripts(path: str = INITDB_DIR) -> list[InitScriptEntry]:
    names = sorted(name for name in os.listdir(path) if not name.startswith('.'))
    return [classify_init_script(os.path.join(path, name)) for name in names]


def _parse_environment(payload: bytes) -> dict[str, str]:
    environ: dict[str, str] = {}
    for entry in payload.decode('utf-8', 'surrogateescape').split('\0'):
        if '=' not in entry:
            continue
        key, value = entry.split('=', 1)
        environ[key] = value
    return environ


class InitScriptRunner:
    """Execute :class:`InitScriptEntry` objects in order against the temporary server."""

    def __init__(
        self,
        config: RuntimeConfig,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.program = sys.argv[0] or 'docker-entrypoint'

    def run_all(self, entries: list[InitScriptEntry]) -> None:
        for entry in entries:
            self.run(entry)

    def run(self, entry: InitScriptEntry) -> None:
        if entry.kind is InitScriptKind.SKIP:
            warn(f'{self.program}: ignoring {entry.path}')
            return

        if entry.kind is InitScriptKind.SOURCED_SHELL:
            note(f'{self.program}: sourcing {entry.path}')
            self._source_shell_script(entry.path)
            return

        note(f'{self.program}: running {entry.path}')
        if entry.kind is InitScriptKind.EXECUTABLE_SHELL:
            run_command([entry.path], env=dict(self.environ))
        elif entry.kind is InitScriptKind.PLAIN_SQL:
            with open(entry.path, 'rb') as handle:
                process_sql(self.config, handle)
        else:
            pipe_into_sql(self.config, [*entry.codec, entry.path])

    def _source_shell_script(self, path: str) -> None:
        warn(
            f'{path} is not executable; sourcing scripts is deprecated and only its '
            'exported environment is kept (chmod +x it to run it as a program)'
        )
        read_fd, write_fd = os.pipe()
        command = [
            BASH,
            '-c',
            _SOURCE_WRAPPER,
            BASH,
            path,
            str(write_fd),
            self.config.socket,
            self.config.datadir,
            MYSQL_CLIENT,
        ]
        try:
            process = subprocess.Popen(command, env=dict(self.environ), pass_fds=(write_fd,))
        except OSError:
            os.close(read_fd)
            raise
        finally:
            os.close(write_fd)
        with os.fdopen(read_fd, 'rb') as reader:
            payload = reader.read()
        returncode = process.wait()
        if returncode != 0:
            raise CommandError([BASH, path], returncode)

        # A script that calls ``exit`` never reaches the environment dump.
        if not payload:
            return
        self._merge_environment(_parse_environment(payload))

    def _merge_environment(self, updated: dict[str, str]) -> None:
        for key in list(self.environ):
            if key not in updated and key not in _SHELL_VARIABLES:
                del self.environ[key]
        for key, value in updated.items():
            if key in _SHELL_VARIABLES:
                continue
            if self.environ.get(key) != value:
                self.environ[key] = value
