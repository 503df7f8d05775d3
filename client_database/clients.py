"""
OAuth2 client credential administration

Rows in oauth2_clients are created here with a bcrypt hash of the secret,
changed only through their mutable fields, and retired by clearing
is_active. Nothing in this module removes a row.
"""

import json
import logging
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from passlib.context import CryptContext

from client_database.mysql import parse_rows, sql_literal

logger = logging.getLogger(__name__)

TABLE = 'oauth2_clients'

GRANT_TYPES = (
    'authorization_code',
    'client_credentials',
    'refresh_token',
    'password',
    'implicit',
    'urn:ietf:params:oauth:grant-type:device_code',
    'urn:ietf:params:oauth:grant-type:jwt-bearer',
)

MUTABLE_FIELDS = ('client_name', 'grant_types', 'scopes', 'redirect_uris', 'metadata')

_TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%i:%s'

_SELECT_COLUMNS = (
    "JSON_OBJECT("
    "'client_id', client_id, "
    "'client_secret_hash', client_secret_hash, "
    "'client_name', client_name, "
    "'grant_types', grant_types, "
    "'scopes', scopes, "
    "'redirect_uris', redirect_uris, "
    "'is_active', is_active, "
    f"'created_at', DATE_FORMAT(created_at, '{_TIMESTAMP_FORMAT}'), "
    f"'updated_at', DATE_FORMAT(updated_at, '{_TIMESTAMP_FORMAT}'), "
    "'created_by', created_by, "
    "'metadata', metadata)"
)


class ClientNotFoundError(Exception):
    pass


class ClientExistsError(Exception):
    pass


@dataclass
class OAuth2Client:
    client_id: str
    client_secret_hash: str = field(repr=False)
    client_name: str
    grant_types: List[str]
    scopes: List[str]
    redirect_uris: Optional[List[str]] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'OAuth2Client':
        return cls(
            client_id=row['client_id'],
            client_secret_hash=row['client_secret_hash'],
            client_name=row['client_name'],
            grant_types=list(row.get('grant_types') or []),
            scopes=list(row.get('scopes') or []),
            redirect_uris=row.get('redirect_uris'),
            is_active=bool(row.get('is_active', True)),
            created_at=_parse_timestamp(row.get('created_at')),
            updated_at=_parse_timestamp(row.get('updated_at')),
            created_by=row.get('created_by'),
            metadata=row.get('metadata'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the record; the secret hash is left out"""
        data = asdict(self)
        data.pop('client_secret_hash')
        for key in ('created_at', 'updated_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def generate_secret() -> str:
    return secrets.token_urlsafe(32)


def make_hasher(rounds: int = 10) -> CryptContext:
    return CryptContext(schemes=['bcrypt'], deprecated='auto', bcrypt__rounds=rounds)


def hash_secret(secret: str, rounds: int = 10) -> str:
    return make_hasher(rounds).hash(secret)


def verify_secret(secret: str, secret_hash: str) -> bool:
    return make_hasher().verify(secret, secret_hash)


def validate_client_id(client_id: str) -> None:
    if not client_id or len(client_id) > 255:
        raise ValueError("client_id must be between 1 and 255 characters")
    if any(ch.isspace() for ch in client_id):
        raise ValueError("client_id must not contain whitespace")


def _string_list(name: str, values: Optional[Iterable[str]], required: bool = True) -> Optional[List[str]]:
    if values is None:
        if required:
            raise ValueError(f"{name} is required")
        return None
    items = [str(value).strip() for value in values]
    if any(not item for item in items):
        raise ValueError(f"{name} must not contain empty values")
    if required and not items:
        raise ValueError(f"{name} must not be empty")
    # Keep the first occurrence of each value, in order
    return list(dict.fromkeys(items))


def validate_grant_types(grant_types: List[str], redirect_uris: Optional[List[str]]) -> None:
    unknown = [grant for grant in grant_types if grant not in GRANT_TYPES]
    if unknown:
        raise ValueError(
            f"Unsupported grant types: {', '.join(unknown)}. "
            f"Supported types: {', '.join(GRANT_TYPES)}"
        )
    if 'authorization_code' in grant_types and not redirect_uris:
        raise ValueError("authorization_code clients need at least one redirect URI")


class ClientRepository:
    """
    Credential records, accessed through a SQL executor

    The executor takes SQL text and returns the tab-separated, headerless
    output of the mysql client.
    """

    def __init__(self, execute: Callable[[str], str], rounds: int = 10):
        self._execute = execute
        self._hasher = make_hasher(rounds)

    def _query(self, where: str = '') -> List[OAuth2Client]:
        sql = f"SELECT {_SELECT_COLUMNS} FROM {TABLE}"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY client_id;"
        return [
            OAuth2Client.from_row(json.loads(row[0]))
            for row in parse_rows(self._execute(sql))
        ]

    def find(self, client_id: str) -> Optional[OAuth2Client]:
        found = self._query(f"client_id = {sql_literal(client_id)}")
        return found[0] if found else None

    def get(self, client_id: str) -> OAuth2Client:
        client = self.find(client_id)
        if client is None:
            raise ClientNotFoundError(f"Client not found: {client_id}")
        return client

    def list(self, include_inactive: bool = False) -> List[OAuth2Client]:
        return self._query('' if include_inactive else 'is_active = TRUE')

    def create(
        self,
        client_id: str,
        client_name: str,
        grant_types: Iterable[str],
        scopes: Iterable[str],
        redirect_uris: Optional[Iterable[str]] = None,
        created_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        secret: Optional[str] = None
    ) -> Tuple[OAuth2Client, str]:
        """
        Insert a new client

        Returns:
            The stored record and the plaintext secret, which is not kept
            anywhere and cannot be recovered later
        """
        validate_client_id(client_id)
        if not client_name:
            raise ValueError("client_name is required")
        grants = _string_list('grant_types', grant_types)
        scope_list = _string_list('scopes', scopes)
        redirects = _string_list('redirect_uris', redirect_uris, required=False) or None
        validate_grant_types(grants, redirects)

        if self.find(client_id) is not None:
            raise ClientExistsError(f"Client already exists: {client_id}")

        secret = secret or generate_secret()
        values = {
            'client_id': client_id,
            'client_secret_hash': self._hasher.hash(secret),
            'client_name': client_name,
            'grant_types': grants,
            'scopes': scope_list,
            'redirect_uris': redirects,
            'is_active': True,
            'created_by': created_by,
            'metadata': metadata,
        }
        columns = ', '.join(values)
        literals = ', '.join(sql_literal(value) for value in values.values())
        self._execute(f"INSERT INTO {TABLE} ({columns}) VALUES ({literals});")
        logger.info("Created OAuth2 client %s", client_id)
        return self.get(client_id), secret

    def update(self, client_id: str, /, **fields: Any) -> OAuth2Client:
        """
        Change mutable fields of a client

        Raises:
            ValueError: For the identifier, the secret, the active flag or
                unknown fields
        """
        if 'client_id' in fields:
            raise ValueError("client_id cannot be changed")
        if 'client_secret' in fields or 'client_secret_hash' in fields:
            raise ValueError("Use rotate_secret to change the client secret")
        if 'is_active' in fields:
            raise ValueError("Use activate or deactivate to change is_active")
        unknown = sorted(set(fields) - set(MUTABLE_FIELDS))
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(unknown)}")

        current = self.get(client_id)
        if not fields:
            return current

        if 'client_name' in fields and not fields['client_name']:
            raise ValueError("client_name must not be empty")
        for name in ('grant_types', 'scopes'):
            if name in fields:
                fields[name] = _string_list(name, fields[name])
        if 'redirect_uris' in fields:
            fields['redirect_uris'] = _string_list('redirect_uris', fields['redirect_uris'],
                                                   required=False) or None
        validate_grant_types(
            fields.get('grant_types', current.grant_types),
            fields.get('redirect_uris', current.redirect_uris)
        )

        self._set(client_id, fields)
        logger.info("Updated OAuth2 client %s: %s", client_id, ', '.join(sorted(fields)))
        return self.get(client_id)

    def rotate_secret(self, client_id: str, secret: Optional[str] = None) -> str:
        """
        Returns:
            The new plaintext secret
        """
        self.get(client_id)
        secret = secret or generate_secret()
        self._set(client_id, {'client_secret_hash': self._hasher.hash(secret)})
        logger.info("Rotated secret of OAuth2 client %s", client_id)
        return secret

    def deactivate(self, client_id: str) -> OAuth2Client:
        self.get(client_id)
        self._set(client_id, {'is_active': False})
        logger.info("Deactivated OAuth2 client %s", client_id)
        return self.get(client_id)

    def activate(self, client_id: str) -> OAuth2Client:
        self.get(client_id)
        self._set(client_id, {'is_active': True})
        logger.info("Activated OAuth2 client %s", client_id)
        return self.get(client_id)

    def verify(self, client_id: str, secret: str) -> bool:
        """True when the client exists, is active and the secret matches"""
        client = self.find(client_id)
        if client is None or not client.is_active:
            return False
        return self._hasher.verify(secret, client.client_secret_hash)

    def _set(self, client_id: str, values: Dict[str, Any]) -> None:
        assignments = ', '.join(
            f"{column} = {sql_literal(value)}" for column, value in values.items()
        )
        self._execute(
            f"UPDATE {TABLE} SET {assignments} WHERE client_id = {sql_literal(client_id)};"
        )
