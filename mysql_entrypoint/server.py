"""Temporary server lifecycle and the ``mysql`` client plumbing used against it.

During a fresh initialization the entrypoint runs ``mysqld`` daemonized with
networking disabled, talks to it through the unix socket only, and shuts it
down again before the final server takes over.
"""

from __future__ import annotations

import contextlib
import enum
import os
import subprocess
from typing import IO, Iterable, Iterator, Optional, Sequence, Union

from mysql_entrypoint.config import RuntimeConfig, get_config
from mysql_entrypoint.runtime import (
    CommandError,
    ShutdownError,
    StartupError,
    StateTransitionError,
    note,
    run_command,
    warn,
)

MYSQLD = 'mysqld'
MYSQL_CLIENT = 'mysql'
MYSQLADMIN = 'mysqladmin'

SqlSource = Union[int, IO]


class ServerRunState(enum.Enum):
    NOT_STARTED = 'not started'
    TEMPORARY_RUNNING = 'temporary server running'
    STOPPED = 'stopped'
    HANDED_OFF = 'handed off'


# Each state is entered at most once.  A pre-existing data directory goes
# straight from NOT_STARTED to HANDED_OFF.
_TRANSITIONS = {
    ServerRunState.NOT_STARTED: {ServerRunState.TEMPORARY_RUNNING, ServerRunState.HANDED_OFF},
    ServerRunState.TEMPORARY_RUNNING: {ServerRunState.STOPPED},
    ServerRunState.STOPPED: {ServerRunState.HANDED_OFF},
    ServerRunState.HANDED_OFF: set(),
}


def _escape_option_value(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


@contextlib.contextmanager
def passfile(password: str = '') -> Iterator[int]:
    """Yield a readable descriptor holding a ``[client]`` option group.

    The credentials only ever live in an anonymous pipe; children receive it
    as ``/dev/fd/<n>`` through ``pass_fds``.  An empty ``password`` yields an
    empty option file so the client connects without one.
    """

    read_fd, write_fd = os.pipe()
    try:
        with os.fdopen(write_fd, 'w', encoding='utf-8') as handle:
            if password:
                handle.write(f'[client]\npassword="{_escape_option_value(password)}"\n')
        yield read_fd
    finally:
        os.close(read_fd)


def defaults_extra_file(fd: int) -> str:
    return f'--defaults-extra-file=/dev/fd/{fd}'


def client_command(
    config: RuntimeConfig,
    passfile_fd: int,
    args: Sequence[str] = (),
) -> list[str]:
    """Build the ``mysql`` invocation used for every SQL batch.

    ``MYSQL_DATABASE`` is selected by default; a later ``--database`` in
    ``args`` overrides it.
    """

    command = [
        MYSQL_CLIENT,
        defaults_extra_file(passfile_fd),
        '--protocol=socket',
        '-uroot',
        '-hlocalhost',
        f'--socket={config.socket}',
        '--comments',
    ]
    if config.database:
        command.append(f'--database={config.database}')
    command.extend(args)
    return command


def _client_password(config: RuntimeConfig, use_root_password: bool) -> str:
    return config.root_password if use_root_password else ''


def process_sql(
    config: RuntimeConfig,
    source: SqlSource,
    *,
    use_root_password: bool = True,
    args: Sequence[str] = (),
) -> None:
    """Run the SQL read from ``source`` (a file object or descriptor)."""

    with passfile(_client_password(config, use_root_password)) as fd:
        run_command(client_command(config, fd, args), stdin=source, pass_fds=(fd,))


def stream_sql(
    config: RuntimeConfig,
    chunks: Iterable[str],
    *,
    use_root_password: bool = True,
    args: Sequence[str] = (),
) -> None:
    """Write ``chunks`` to the client's stdin as they are produced."""

    with passfile(_client_password(config, use_root_password)) as fd:
        command = client_command(config, fd, args)
        process = subprocess.Popen(command, stdin=subprocess.PIPE, text=True, pass_fds=(fd,))
        # A client that dies early closes the pipe; its exit status below
        # reports the failure.
        with contextlib.suppress(BrokenPipeError):
            for chunk in chunks:
                process.stdin.write(chunk)
        with contextlib.suppress(BrokenPipeError):
            process.stdin.close()
        returncode = process.wait()
    if returncode != 0:
        raise CommandError(command, returncode)


def pipe_into_sql(
    config: RuntimeConfig,
    producer: Sequence[str],
    *,
    use_root_password: bool = True,
    args: Sequence[str] = (),
) -> None:
    """Run ``producer | mysql``; either side failing fails the whole pipe."""

    process = subprocess.Popen(list(producer), stdout=subprocess.PIPE)
    try:
        process_sql(config, process.stdout, use_root_password=use_root_password, args=args)
    finally:
        process.stdout.close()
        returncode = process.wait()
    if returncode != 0:
        raise CommandError(producer, returncode)


def init_database_dir(command: Sequence[str]) -> None:
    note('Initializing database files')
    # autocommit is forced on because an initialize run with it disabled
    # leaves the system tables unwritten.
    run_command([*command, '--initialize-insecure', '--default-time-zone=SYSTEM', '--autocommit=1'])
    note('Database files initialized')


def socket_fix(config: RuntimeConfig, default_socket: Optional[str] = None) -> None:
    """Point the compiled-in default socket path at the configured socket.

    Clients that ignore the option files still find the server this way.
    Failure to create the link is only reported.
    """

    if default_socket is None:
        default_socket = get_config('socket', [MYSQLD, '--no-defaults'])
    if not default_socket or default_socket == config.socket:
        return

    try:
        # A link is replaced whatever it points at; a real directory is kept.
        if os.path.islink(default_socket) or (
            os.path.lexists(default_socket) and not os.path.isdir(default_socket)
        ):
            os.unlink(default_socket)
        os.symlink(config.socket, default_socket)
    except OSError as exc:
        warn(f'Unable to link {default_socket} to {config.socket}: {exc}')
        return
    note(f"'{default_socket}' -> '{config.socket}'")


class TemporaryServer:
    """Lifecycle of the provisioning server, enforcing :data:`_TRANSITIONS`."""

    def __init__(self, command: Sequence[str]) -> None:
        self.command = list(command)
        self.state = ServerRunState.NOT_STARTED

    def _check_transition(self, target: ServerRunState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise StateTransitionError(
                f'Invalid server state transition: {self.state.value} -> {target.value}'
            )

    def _transition(self, target: ServerRunState) -> None:
        self._check_transition(target)
        self.state = target

    def start(self, config: RuntimeConfig) -> None:
        """Start ``mysqld`` daemonized; returns once the server accepts connections."""

        self._check_transition(ServerRunState.TEMPORARY_RUNNING)
        command = [
            *self.command,
            '--daemonize',
            '--skip-networking',
            '--default-time-zone=SYSTEM',
            f'--socket={config.socket}',
        ]
        try:
            result = subprocess.run(command)
        except OSError as exc:
            raise StartupError(f'Unable to start server. ({exc})') from exc
        if result.returncode != 0:
            raise StartupError('Unable to start server.')
        self._transition(ServerRunState.TEMPORARY_RUNNING)

    def stop(self, config: RuntimeConfig) -> None:
        self._check_transition(ServerRunState.STOPPED)
        with passfile(config.root_password) as fd:
            command = [
                MYSQLADMIN,
                defaults_extra_file(fd),
                'shutdown',
                '-uroot',
                f'--socket={config.socket}',
            ]
            try:
                result = subprocess.run(command, pass_fds=(fd,))
            except OSError as exc:
                raise ShutdownError(f'Unable to shut down server. ({exc})') from exc
        if result.returncode != 0:
            raise ShutdownError('Unable to shut down server.')
        self._transition(ServerRunState.STOPPED)

    def hand_off(self) -> None:
        self._transition(ServerRunState.HANDED_OFF)
