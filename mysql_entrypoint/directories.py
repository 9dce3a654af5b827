"""Directory provisioning and first-run detection for the data directory."""

from __future__ import annotations

import enum
import os
import pwd
from pathlib import Path
from typing import Iterable

from mysql_entrypoint.config import RuntimeConfig, extract_config
from mysql_entrypoint.runtime import ConfigError, note

SERVICE_USER = 'mysql'

# ``mysqld`` options whose parent directory has to exist before the server
# starts.  ``secure-file-priv`` already names a directory.
PATH_OPTIONS = (
    'general-log-file',
    'keyring_file_data',
    'pid-file',
    'secure-file-priv',
    'slow-query-log-file',
)
DIRECTORY_OPTIONS = {'secure-file-priv'}

# The system schema only exists once ``mysqld --initialize`` has completed.
SYSTEM_SCHEMA = 'mysql'


class DataDirState(enum.Enum):
    FRESH = 'fresh'
    PRE_EXISTING = 'pre-existing'


def collect_directories(config: RuntimeConfig, help_output: str) -> list[str]:
    """Return the directories the server needs, without duplicates."""

    dirs: dict[str, None] = {config.datadir: None, os.path.dirname(config.socket): None}
    for option in PATH_OPTIONS:
        value = extract_config(help_output, option)
        if not value or value == 'NULL':
            continue
        if option not in DIRECTORY_OPTIONS:
            value = os.path.dirname(value)
        dirs[value] = None
    return [directory for directory in dirs if directory]


def _chown_tree(root: str, uid: int) -> int:
    """``find root ! -user <uid> -exec chown --no-dereference``; returns the count."""

    changed = 0

    def _fail(exc: OSError) -> None:
        raise exc

    def _align(path: str) -> None:
        nonlocal changed
        if os.lstat(path).st_uid != uid:
            os.lchown(path, uid, -1)
            changed += 1

    _align(root)
    if os.path.islink(root):
        return changed
    for current, dirnames, filenames in os.walk(root, onerror=_fail):
        for name in (*dirnames, *filenames):
            _align(os.path.join(current, name))
    return changed


def create_directories(dirs: Iterable[str], user: str = SERVICE_USER) -> None:
    """Create ``dirs`` and hand them to ``user`` when running as root."""

    dirs = list(dirs)
    for directory in dirs:
        os.makedirs(directory, exist_ok=True)

    if os.geteuid() != 0:
        return

    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError as exc:
        raise ConfigError(f'Unable to find the {user!r} account to own the server directories') from exc
    for directory in dirs:
        changed = _chown_tree(directory, uid)
        if changed:
            note(f'Changed ownership of {changed} entries under {directory} to {user!r}')


def classify_datadir(datadir: str) -> DataDirState:
    """Classify ``datadir`` without creating or modifying anything in it."""

    if (Path(datadir) / SYSTEM_SCHEMA).is_dir():
        return DataDirState.PRE_EXISTING
    return DataDirState.FRESH
