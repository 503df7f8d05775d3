"""
SQL resources shipped with the package

Files live under client_database/sql/<group>/ and are executed in file
name order. ${NAME} placeholders are filled in from the configuration;
anything else that starts with a dollar sign (bcrypt hashes, for one) is
left as written.
"""

import re
from importlib import resources
from typing import Dict, List, Tuple

SCHEMA = 'schema'
USERS = 'users'
FIXTURES = 'fixtures'
QUERIES = 'queries'

GROUPS = (SCHEMA, USERS, FIXTURES, QUERIES)

_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


def _group_dir(group: str):
    if group not in GROUPS:
        raise ValueError(f"Unknown SQL group: {group}. Known groups: {', '.join(GROUPS)}")
    return resources.files('client_database').joinpath('sql', group)


def sql_files(group: str) -> List[str]:
    """File names of a group, in execution order"""
    return sorted(
        entry.name for entry in _group_dir(group).iterdir()
        if entry.name.endswith('.sql')
    )


def read_sql(group: str, filename: str) -> str:
    return _group_dir(group).joinpath(filename).read_text(encoding='utf-8')


def placeholders(text: str) -> List[str]:
    return sorted(set(_PLACEHOLDER.findall(text)))


def _escape(value: str) -> str:
    # Values land inside single-quoted SQL strings
    return value.replace('\\', '\\\\').replace("'", "\\'")


def render(text: str, variables: Dict[str, str]) -> str:
    """
    Substitute ${NAME} placeholders

    Raises:
        ValueError: If a placeholder has no value
    """
    missing = [name for name in placeholders(text) if not variables.get(name)]
    if missing:
        raise ValueError(f"Unset template variables: {', '.join(missing)}")
    return _PLACEHOLDER.sub(lambda m: _escape(variables[m.group(1)]), text)


def render_group(group: str, variables: Dict[str, str]) -> List[Tuple[str, str]]:
    """
    Returns:
        (file name, rendered SQL) pairs in execution order
    """
    return [
        (filename, render(read_sql(group, filename), variables))
        for filename in sql_files(group)
    ]


def health_check_sql(variables: Dict[str, str]) -> str:
    return render(read_sql(QUERIES, 'health_check.sql'), variables)
