"""
MySQL client command lines and output parsing

Commands built here run inside the database pod. Passwords are handed to
the client through MYSQL_PWD rather than -p so they never show up in
error messages.
"""

import json
import shlex
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from client_database.config import OperatorConfig


@dataclass(frozen=True)
class Credentials:
    user: str
    password: str
    database: Optional[str] = None

    @classmethod
    def maint(cls, config: OperatorConfig) -> 'Credentials':
        return cls(
            user=config.database.maint_username,
            password=config.database.maint_password,
            database=config.database.name
        )

    @classmethod
    def root(cls, config: OperatorConfig) -> 'Credentials':
        return cls(user='root', password=config.database.root_password)

    def __repr__(self) -> str:
        return f"Credentials(user={self.user!r}, database={self.database!r})"


BACKUP_DUMP_OPTIONS = ['--single-transaction', '--routines', '--triggers', '--events']
SCHEMA_DUMP_OPTIONS = ['--no-data', '--routines', '--triggers', '--events']

STATUS_VARIABLES = [
    'Uptime',
    'Threads_connected',
    'Max_used_connections',
    'Slow_queries',
    'Questions',
    'Innodb_buffer_pool_pages_free',
    'Innodb_buffer_pool_pages_total',
]


def _with_password(credentials: Credentials, argv: List[str]) -> List[str]:
    if credentials.password:
        return ['env', f'MYSQL_PWD={credentials.password}'] + argv
    return argv


def mysql_command(
    credentials: Credentials,
    sql: Optional[str] = None,
    silent: bool = True,
    use_database: bool = True
) -> List[str]:
    """
    Build an argv running the mysql client

    Args:
        sql: Statements passed with -e; None reads them from stdin
        silent: Tab-separated output without column headers (-s -N)
        use_database: Connect to the credentials' database
    """
    argv = ['mysql', f'-u{credentials.user}', '--default-character-set=utf8mb4']
    if silent:
        argv += ['-s', '-N']
    if sql is not None:
        argv += ['-e', sql]
    if use_database and credentials.database:
        argv.append(credentials.database)
    return _with_password(credentials, argv)


def mysqldump_command(credentials: Credentials, schema_only: bool = False) -> List[str]:
    options = SCHEMA_DUMP_OPTIONS if schema_only else BACKUP_DUMP_OPTIONS
    argv = ['mysqldump', f'-u{credentials.user}'] + options + [credentials.database]
    return _with_password(credentials, argv)


def mysqladmin_ping_command() -> List[str]:
    return ['mysqladmin', 'ping', '-h', 'localhost', '--silent']


def interactive_mysql_command(database: str) -> List[str]:
    """
    Interactive mysql client that takes the maintenance credentials from
    the pod environment, keeping them off the local command line
    """
    script = (
        'MYSQL_PWD="$DB_MAINT_PASSWORD" exec mysql -u"$DB_MAINT_USERNAME" '
        f'--default-character-set=utf8mb4 {shlex.quote(database)}'
    )
    return ['sh', '-c', script]


def split_env(command: List[str]) -> Tuple[List[str], List[str]]:
    """Separate a leading `env NAME=value ...` prefix from the program argv"""
    if not command or command[0] != 'env':
        return [], list(command)
    index = 1
    while index < len(command) and '=' in command[index]:
        index += 1
    return list(command[:index]), list(command[index:])


def bounded_stdin_command(command: List[str], size: int) -> List[str]:
    """
    Wrap a command so it sees end of input after exactly `size` bytes

    The exec stream cannot half-close stdin, so a reader that waits for EOF
    (the mysql client does) is fed through `head -c`.
    """
    if size < 0:
        raise ValueError("size must not be negative")
    env, program = split_env(command)
    script = f'head -c {int(size)} | {shlex.join(program)}'
    return env + ['sh', '-c', script]


_ESCAPES = {
    '\\': '\\\\',
    "'": "\\'",
    '"': '\\"',
    '\0': '\\0',
    '\n': '\\n',
    '\r': '\\r',
    '\x1a': '\\Z',
}


def sql_literal(value: Any) -> str:
    """Quote a Python value for inline use in a MySQL statement"""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(list(value) if isinstance(value, tuple) else value)
    escaped = ''.join(_ESCAPES.get(ch, ch) for ch in str(value))
    return f"'{escaped}'"


def _unescape(field: str) -> str:
    # Batch mode escapes tab, newline, NUL and backslash in values
    out = []
    chars = iter(field)
    for ch in chars:
        if ch != '\\':
            out.append(ch)
            continue
        nxt = next(chars, '')
        out.append({'n': '\n', 't': '\t', '0': '\0', '\\': '\\'}.get(nxt, '\\' + nxt))
    return ''.join(out)


def parse_rows(output: str) -> List[List[str]]:
    """Split `mysql -s -N` output into rows of column values"""
    return [
        [_unescape(field) for field in line.split('\t')]
        for line in output.splitlines()
        if line
    ]


def database_statistics_sql(database: str) -> str:
    schema = sql_literal(database)
    return (
        "SELECT CONCAT('Total Tables: ', COUNT(*)) AS stat "
        f"FROM information_schema.tables WHERE table_schema = {schema} "
        "UNION ALL "
        "SELECT CONCAT('Database Size: ', "
        "ROUND(COALESCE(SUM(data_length + index_length), 0) / 1024 / 1024, 2), ' MB') "
        f"FROM information_schema.tables WHERE table_schema = {schema};"
    )


def status_variables_sql() -> str:
    names = ', '.join(sql_literal(name) for name in STATUS_VARIABLES)
    return f"SHOW STATUS WHERE Variable_name IN ({names});"


def format_uptime(seconds: int) -> str:
    days, rest = divmod(int(seconds), 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return f"{days}d {hours}h {minutes}m"
