"""Credential and privilege bootstrap against the temporary server.

The provisioning SQL is planned up front from :class:`RuntimeConfig` as a
:class:`GrantPlan`, then applied batch by batch over the unix socket with
PyMySQL.  Only the first batch runs without a root password, because that
batch is the one that sets it.
"""

from __future__ import annotations

import base64
import secrets
import subprocess
from dataclasses import dataclass, replace
from typing import Optional, Sequence

import pymysql

from mysql_entrypoint.config import ROOT_USER, RuntimeConfig
from mysql_entrypoint.runtime import CommandError, SqlBatchError, note
from mysql_entrypoint.server import stream_sql

MYSQL_TZINFO_TO_SQL = 'mysql_tzinfo_to_sql'
ZONEINFO_DIR = '/usr/share/zoneinfo'
SYSTEM_DATABASE = 'mysql'
RANDOM_PASSWORD_BYTES = 24

# Warnings printed by the timezone compiler into its SQL output that would
# otherwise be stored as zone abbreviations.  Matched case-sensitively as a
# substring, first occurrence per line.
KNOWN_BENIGN_WARNINGS = {
    'Local time zone must be set--see zic manual page': 'FCTY',
}

Statement = tuple[str, Optional[tuple]]


@dataclass(frozen=True)
class StatementBatch:
    """Statements executed together on one connection."""

    label: str
    statements: tuple[Statement, ...]
    use_root_password: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class GrantPlan:
    batches: tuple[StatementBatch, ...]
    expire_batch: Optional[StatementBatch] = None

    def statements(self) -> list[str]:
        batches = list(self.batches)
        if self.expire_batch is not None:
            batches.append(self.expire_batch)
        return [sql for batch in batches for sql, _ in batch.statements]


def quote_identifier(identifier: str) -> str:
    """Return ``identifier`` quoted for use in MySQL statements."""

    return '`' + identifier.replace('`', '``') + '`'


def grant_pattern(database: str) -> str:
    """Quote ``database`` for a GRANT, escaping ``_`` so it is not a wildcard."""

    return quote_identifier(database.replace('_', '\\_'))


def format_safe(sql_fragment: str) -> str:
    """Escape ``%`` in text placed into a statement that also binds parameters.

    The driver %-formats any statement executed with parameters.
    """

    return sql_fragment.replace('%', '%%')


def filter_known_warnings(line: str) -> str:
    for text, replacement in KNOWN_BENIGN_WARNINGS.items():
        line = line.replace(text, replacement, 1)
    return line


def load_timezone_info(config: RuntimeConfig) -> None:
    """Load ``/usr/share/zoneinfo`` into the system schema.

    Runs before the root password exists, so the client connects without one.
    """

    if config.skip_tzinfo:
        return

    command = [MYSQL_TZINFO_TO_SQL, ZONEINFO_DIR]
    process = subprocess.Popen(command, stdout=subprocess.PIPE, text=True)
    try:
        stream_sql(
            config,
            (filter_known_warnings(line) for line in process.stdout),
            use_root_password=False,
            args=[f'--database={SYSTEM_DATABASE}'],
        )
    finally:
        process.stdout.close()
        returncode = process.wait()
    if returncode != 0:
        raise CommandError(command, returncode)


def generate_root_password() -> str:
    return base64.b64encode(secrets.token_bytes(RANDOM_PASSWORD_BYTES)).decode('ascii')


def ensure_root_password(config: RuntimeConfig) -> RuntimeConfig:
    """Return ``config`` with a generated root password when one was requested.

    The generated value is logged here and nowhere else.
    """

    if not config.random_root_password:
        return config
    password = generate_root_password()
    note(f'GENERATED ROOT PASSWORD: {password}')
    return replace(config, root_password=password)


def build_grant_plan(config: RuntimeConfig) -> GrantPlan:
    """Plan the provisioning statements for ``config``.

    The plan depends only on which optional values are set.  Values are bound
    as driver parameters; identifiers are quoted.
    """

    root_statements: list[Statement] = [
        ('SET autocommit = 1', None),
        # Provisioning must not be replicated.
        ('SET @@SESSION.SQL_LOG_BIN=0', None),
        ("ALTER USER 'root'@'localhost' IDENTIFIED BY %s", (config.root_password,)),
        ("GRANT ALL ON *.* TO 'root'@'localhost' WITH GRANT OPTION", None),
        ('FLUSH PRIVILEGES', None),
    ]
    if config.root_host and config.root_host != 'localhost':
        root_statements.extend(
            [
                ("CREATE USER 'root'@%s IDENTIFIED BY %s", (config.root_host, config.root_password)),
                ("GRANT ALL ON *.* TO 'root'@%s WITH GRANT OPTION", (config.root_host,)),
            ]
        )
    root_statements.append(('DROP DATABASE IF EXISTS test', None))

    batches = [
        StatementBatch('root account setup', tuple(root_statements), use_root_password=False),
    ]

    if config.database:
        batches.append(
            StatementBatch(
                'database creation',
                ((f'CREATE DATABASE IF NOT EXISTS {quote_identifier(config.database)}', None),),
                description=f'Creating database {config.database}',
            )
        )

    if config.user and config.password:
        batches.append(
            StatementBatch(
                'user creation',
                (('CREATE USER %s@%s IDENTIFIED BY %s', (config.user, '%', config.password)),),
                description=f'Creating user {config.user}',
            )
        )
        if config.database:
            batches.append(
                StatementBatch(
                    'user grant',
                    (
                        (
                            f'GRANT ALL ON {format_safe(grant_pattern(config.database))}.* TO %s@%s',
                            (config.user, '%'),
                        ),
                    ),
                    description=f'Giving user {config.user} access to schema {config.database}',
                )
            )

    expire_batch = None
    if config.onetime_password:
        expire_batch = StatementBatch(
            'root password expiry',
            (("ALTER USER 'root'@'%' PASSWORD EXPIRE", None),),
        )

    return GrantPlan(tuple(batches), expire_batch)


def apply_batch(config: RuntimeConfig, batch: StatementBatch) -> None:
    """Execute ``batch`` on a fresh socket connection, stopping at the first error."""

    password = config.root_password if batch.use_root_password else ''
    try:
        connection = pymysql.connect(
            unix_socket=config.socket,
            user=ROOT_USER,
            password=password,
            database=SYSTEM_DATABASE,
            autocommit=True,
        )
        with connection:
            with connection.cursor() as cursor:
                for sql, params in batch.statements:
                    cursor.execute(sql, params)
    except pymysql.MySQLError as exc:
        raise SqlBatchError(f'Unable to apply {batch.label}: {exc}') from exc


def apply_batches(config: RuntimeConfig, batches: Sequence[StatementBatch]) -> None:
    for batch in batches:
        if batch.description:
            note(batch.description)
        apply_batch(config, batch)


def setup_database(config: RuntimeConfig) -> tuple[RuntimeConfig, GrantPlan]:
    """Load timezones, settle the root password and apply the grant plan.

    Returns the config carrying the final root password together with the
    plan, whose ``expire_batch`` runs after the init scripts.
    """

    load_timezone_info(config)
    config = ensure_root_password(config)
    plan = build_grant_plan(config)
    apply_batches(config, plan.batches)
    return config, plan


def expire_root_user(config: RuntimeConfig, plan: GrantPlan) -> None:
    if plan.expire_batch is not None:
        apply_batch(config, plan.expire_batch)
