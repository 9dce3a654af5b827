"""Logging, error types and the command runner shared by the entrypoint."""

from __future__ import annotations

import subprocess
import sys
from datetime import datetime
from typing import Optional, Sequence, TextIO


def _timestamp() -> str:
    # Same shape as ``date --rfc-3339=seconds``.
    return datetime.now().astimezone().isoformat(sep=' ', timespec='seconds')


def log(kind: str, message: str, stream: Optional[TextIO] = None) -> None:
    target = sys.stdout if stream is None else stream
    print(f'{_timestamp()} [{kind}] [Entrypoint]: {message}', file=target, flush=True)


def note(message: str) -> None:
    log('Note', message)


def warn(message: str) -> None:
    log('Warn', message, sys.stderr)


def error(message: str) -> None:
    log('ERROR', message, sys.stderr)


class EntrypointError(SystemExit):
    """Base class for every failure that aborts the bootstrap.

    The bootstrap has no partial-success mode, so every subclass is fatal.
    ``main`` reports the message once and exits with status 1.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class ConfigError(EntrypointError):
    """Invalid environment: exclusive secrets, missing password option, reserved user."""


class ConfigCheckError(EntrypointError):
    """``mysqld`` rejected its own configuration while dumping ``--verbose --help``."""


class StartupError(EntrypointError):
    """The temporary server did not start."""


class ShutdownError(EntrypointError):
    """The temporary server did not stop cleanly."""


class InitScriptsPermissionError(EntrypointError):
    """The init-script directory cannot be listed."""


class StateTransitionError(EntrypointError):
    """A server lifecycle transition was attempted out of order."""


class SqlBatchError(EntrypointError):
    """A provisioning statement batch failed against the temporary server."""


class CommandError(EntrypointError):
    """Exception raised when ``run_command`` encounters a failure."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str = '',
        stderr: str = '',
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f'Command {" ".join(self.command)!r} failed with exit code {returncode}'
        if stderr:
            message = f'{message}\n\t{stderr.rstrip()}'
        super().__init__(message)


def run_command(command: Sequence[str], **kwargs) -> subprocess.CompletedProcess:
    """Run ``command`` to completion, raising :class:`CommandError` on failure.

    Output is inherited from the entrypoint unless the caller redirects it,
    so the server and client diagnostics end up in the container log.
    """

    try:
        result = subprocess.run(list(command), **kwargs)
    except OSError as exc:
        raise CommandError(command, 127, stderr=str(exc)) from exc
    if result.returncode != 0:
        stdout = result.stdout if isinstance(result.stdout, str) else ''
        stderr = result.stderr if isinstance(result.stderr, str) else ''
        raise CommandError(command, result.returncode, stdout, stderr)
    return result
