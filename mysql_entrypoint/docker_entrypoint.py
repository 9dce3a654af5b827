#!/usr/bin/env python3
"""Container entrypoint for the MySQL server image.

Invoked with the container command line.  When the command is ``mysqld``
(or only flags, which imply ``mysqld``) and no help/version output was
requested, the entrypoint:

1. checks the server configuration and resolves the runtime configuration;
2. creates the directories the server needs and, when running as root,
   re-executes itself as the ``mysql`` account through ``gosu``;
3. classifies the data directory once.  A fresh directory is initialized,
   provisioned through a temporary socket-only server and populated by the
   init scripts; a pre-existing one only gets its socket link refreshed;
4. replaces itself with the final command, arguments unchanged.

Any failure before step 4 logs a single error line and exits with status 1.
"""

from __future__ import annotations

import os
import sys
from typing import MutableMapping, NoReturn, Optional, Sequence

from mysql_entrypoint.config import (
    RuntimeConfig,
    check_config,
    export_environment,
    load_help_output,
    resolve_runtime_config,
    verify_minimum_env,
)
from mysql_entrypoint.directories import (
    SERVICE_USER,
    DataDirState,
    classify_datadir,
    collect_directories,
    create_directories,
)
from mysql_entrypoint.init_scripts import (
    INITDB_DIR,
    InitScriptRunner,
    check_init_dir,
    discover_init_scripts,
)
from mysql_entrypoint.provisioning import expire_root_user, setup_database
from mysql_entrypoint.runtime import EntrypointError, error, note
from mysql_entrypoint.server import MYSQLD, TemporaryServer, init_database_dir, socket_fix

ENTRYPOINT_MODULE = 'mysql_entrypoint.docker_entrypoint'
GOSU = 'gosu'
HELP_FLAGS = frozenset({'-?', '--help', '--print-defaults', '-V', '--version'})


def normalize_args(argv: Sequence[str]) -> list[str]:
    """Prefix ``mysqld`` when the command line is empty or starts with a flag."""

    args = list(argv)
    if not args or args[0].startswith('-'):
        args.insert(0, MYSQLD)
    return args


def want_help(args: Sequence[str]) -> bool:
    return any(arg in HELP_FLAGS for arg in args)


def drop_privileges(args: Sequence[str]) -> NoReturn:
    """Re-execute the entrypoint as the service account."""

    note(f"Switching to dedicated user '{SERVICE_USER}'")
    os.execvp(GOSU, [GOSU, SERVICE_USER, sys.executable, '-m', ENTRYPOINT_MODULE, *args])


def handoff(args: Sequence[str]) -> NoReturn:
    os.execvp(args[0], list(args))


class Bootstrap:
    """Drive one container start from configuration to handoff."""

    def __init__(
        self,
        args: Sequence[str],
        environ: Optional[MutableMapping[str, str]] = None,
        initdb_dir: Optional[str] = None,
    ) -> None:
        self.args = list(args)
        self.environ = os.environ if environ is None else environ
        self.initdb_dir = INITDB_DIR if initdb_dir is None else initdb_dir
        self.server = TemporaryServer(self.args)
        self.config: Optional[RuntimeConfig] = None
        self._datadir_state: Optional[DataDirState] = None

    @property
    def datadir_state(self) -> DataDirState:
        """Classification of the data directory, evaluated on first access only."""

        if self._datadir_state is None:
            self._datadir_state = classify_datadir(self.config.datadir)
        return self._datadir_state

    def run(self) -> None:
        note(f'Entrypoint script for MySQL Server {self.environ.get("MYSQL_VERSION", "")} started.')

        check_config(self.args)
        help_output = load_help_output(self.args)
        self.config = resolve_runtime_config(help_output, self.environ, self.args)
        export_environment(self.config, self.environ)
        create_directories(collect_directories(self.config, help_output))

        if os.geteuid() == 0:
            drop_privileges(self.args)

        if self.datadir_state is DataDirState.FRESH:
            self.initialize()
        else:
            socket_fix(self.config)

    def initialize(self) -> None:
        config = self.config
        verify_minimum_env(config)
        check_init_dir(self.initdb_dir)

        init_database_dir(self.args)

        note('Starting temporary server')
        self.server.start(config)
        note('Temporary server started.')

        socket_fix(config)
        config, plan = setup_database(config)
        self.config = config
        # Init scripts see the generated root password like any other value.
        export_environment(config, self.environ)

        runner = InitScriptRunner(config, self.environ)
        runner.run_all(discover_init_scripts(self.initdb_dir))
        expire_root_user(config, plan)

        note('Stopping temporary server')
        self.server.stop(config)
        note('Temporary server stopped')

        note('MySQL init process done. Ready for start up.')

    def hand_off(self) -> NoReturn:
        self.server.hand_off()
        handoff(self.args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = normalize_args(sys.argv[1:] if argv is None else argv)

    if args[0] == MYSQLD and not want_help(args):
        bootstrap = Bootstrap(args)
        try:
            bootstrap.run()
        except (EntrypointError, OSError) as exc:
            error(str(exc))
            return 1
        bootstrap.hand_off()

    handoff(args)


if __name__ == '__main__':
    raise SystemExit(main())
