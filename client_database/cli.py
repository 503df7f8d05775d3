"""
client-database command line
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import kubernetes
import typer

from client_database.backups import BackupNotFoundError, CorruptBackupError
from client_database.clients import ClientExistsError, ClientNotFoundError, OAuth2Client
from client_database.config import OperatorConfig, get_config, load_env_file, set_config
from client_database.console import OK, WARNING, print_detail, print_plain, print_status, print_success
from client_database.deployment import Deployment
from client_database.kube import ExecError, KubeClient, PodNotFoundError, WaitTimeout, load_kube_config
from client_database.maintenance import Maintenance

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


@dataclass
class CliState:
    """Global options shared by all commands"""
    env_file: str
    loaded_env: List[str] = field(default_factory=list)


def make_kube(config: OperatorConfig) -> KubeClient:
    load_kube_config()
    return KubeClient(poll_interval=config.jobs.poll_interval)


def _state(ctx: typer.Context) -> CliState:
    state = ctx.find_root().obj
    if not isinstance(state, CliState):
        raise RuntimeError("CLI state not initialized")
    return state


def _maintenance(local: bool = False) -> Maintenance:
    config = get_config()
    return Maintenance(config, None if local else make_kube(config))


def _deployment() -> Deployment:
    config = get_config()
    return Deployment(config, make_kube(config))


def _fail(message: Any, code: int = 1) -> None:
    typer.secho(f"❌ {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@contextmanager
def _errors() -> Iterator[None]:
    """Turn known failures into an error line and an exit status"""
    try:
        yield
    except ExecError as e:
        logger.debug("Command failed", exc_info=True)
        _fail(e, e.returncode if e.returncode > 0 else 1)
    except (
        ValueError,
        kubernetes.config.ConfigException,
        PodNotFoundError,
        WaitTimeout,
        BackupNotFoundError,
        CorruptBackupError,
        ClientNotFoundError,
        ClientExistsError,
    ) as e:
        logger.debug("Command failed", exc_info=True)
        _fail(e)


def _exit_on(ok: bool) -> None:
    if not ok:
        raise typer.Exit(code=1)


def _ask(question: str) -> str:
    return typer.prompt(question, default='N', show_default=False)


def _always_yes(_question: str) -> str:
    return 'yes'


app = typer.Typer(no_args_is_help=True, help="Operate the OAuth2 client credential database")
clients_app = typer.Typer(no_args_is_help=True, help="Manage OAuth2 client credentials")
app.add_typer(clients_app, name='clients')


@app.callback()
def main(
    ctx: typer.Context,
    env_file: str = typer.Option('.env', '--env-file', help="dotenv file loaded before anything else"),
    verbose: bool = typer.Option(False, '--verbose', '-v', help="Debug logging"),
) -> None:
    """Load settings and configure logging for all commands."""
    loaded = load_env_file(env_file)
    set_config(None)
    try:
        config = get_config()
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")

    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if loaded:
        logger.debug("Loaded from %s: %s", env_file, ', '.join(loaded))

    ctx.obj = CliState(env_file=env_file, loaded_env=loaded)


# ----------------------------------------------------------------------
# Deployment lifecycle
# ----------------------------------------------------------------------

@app.command()
def deploy(ctx: typer.Context) -> None:
    """Create or update the MySQL deployment and wait for it."""
    with _errors():
        _exit_on(_deployment().deploy(_state(ctx).loaded_env))


@app.command()
def status() -> None:
    """Show namespace, StatefulSet, pods, service and storage."""
    with _errors():
        _exit_on(_deployment().status())


@app.command()
def start() -> None:
    """Scale the database to one replica."""
    with _errors():
        _exit_on(_deployment().start())


@app.command()
def stop() -> None:
    """Scale the database to zero replicas; data is kept."""
    with _errors():
        _deployment().stop()


@app.command()
def update() -> None:
    """Re-apply configuration and restart the database."""
    with _errors():
        _exit_on(_deployment().update())


@app.command()
def cleanup(
    yes: bool = typer.Option(False, '--yes', '-y', help="Also delete persistent volumes without asking"),
) -> None:
    """Delete the deployment."""
    with _errors():
        _deployment().cleanup(_always_yes if yes else _ask)


@app.command('check-deps')
def check_deps() -> None:
    """Check that the required command line tools are installed."""
    _exit_on(Deployment(get_config(), None).check_dependencies())


# ----------------------------------------------------------------------
# Database operations
# ----------------------------------------------------------------------

@app.command()
def backup() -> None:
    """Dump the database into a compressed, timestamped file."""
    with _errors():
        _maintenance().backup()


@app.command()
def restore(
    backup_file: Optional[str] = typer.Argument(None, help="Backup file; the latest when omitted"),
    yes: bool = typer.Option(False, '--yes', '-y', help="Do not ask for confirmation"),
) -> None:
    """Replace the database contents with a backup."""
    with _errors():
        _maintenance().restore(backup_file, _always_yes if yes else _ask)


@app.command()
def connect() -> None:
    """Open an interactive mysql shell."""
    with _errors():
        code = _maintenance().connect()
    raise typer.Exit(code=code)


@app.command('load-schema')
def load_schema() -> None:
    """Create the database, tables, indexes and users."""
    with _errors():
        _exit_on(_maintenance().load_schema())


@app.command('load-fixtures')
def load_fixtures() -> None:
    """Insert the sample clients."""
    with _errors():
        _exit_on(_maintenance().load_fixtures())


@app.command()
def health() -> None:
    """Check connectivity and report database statistics."""
    with _errors():
        _exit_on(_maintenance().health())


@app.command('export-schema')
def export_schema(
    output: Optional[str] = typer.Option(None, '--output', '-o', help="Target file"),
) -> None:
    """Write the schema (no data) to a SQL file."""
    with _errors():
        _maintenance().export_schema(output)


@app.command('list-backups')
def list_backups() -> None:
    """List local backups, newest first."""
    _maintenance(local=True).list_backups()


@app.command('clean-backups')
def clean_backups(
    days: Optional[int] = typer.Option(None, '--days', min=1, help="Age limit in days (default: 30)"),
) -> None:
    """Delete local backups older than the age limit."""
    _maintenance(local=True).clean_backups(days)


@app.command()
def logs(
    tail: Optional[int] = typer.Option(None, '--tail', min=1, help="Number of lines"),
    follow: bool = typer.Option(False, '--follow', '-f', help="Stream new lines"),
) -> None:
    """Show the database pod logs."""
    with _errors():
        _maintenance().logs(tail, follow)


# ----------------------------------------------------------------------
# Client credentials
# ----------------------------------------------------------------------

def _parse_metadata(metadata: Optional[str]) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    try:
        value = json.loads(metadata)
    except json.JSONDecodeError as e:
        raise ValueError(f"metadata must be a JSON object: {e}")
    if not isinstance(value, dict):
        raise ValueError("metadata must be a JSON object")
    return value


def _print_client(client: OAuth2Client) -> None:
    print_plain(json.dumps(client.to_dict(), indent=2, sort_keys=True))


def _print_secret(client_id: str, secret: str) -> None:
    print_success(f"Client secret for {client_id}:")
    print_plain(secret)
    print_status(WARNING, "Store it now; it cannot be shown again.")


@clients_app.command('create')
def clients_create(
    client_id: str = typer.Argument(..., help="Unique client identifier"),
    name: str = typer.Option(..., '--name', help="Human readable name"),
    grant_type: List[str] = typer.Option([], '--grant-type', help="Repeat for several"),
    scope: List[str] = typer.Option([], '--scope', help="Repeat for several"),
    redirect_uri: List[str] = typer.Option([], '--redirect-uri', help="Repeat for several"),
    created_by: Optional[str] = typer.Option(None, '--created-by'),
    metadata: Optional[str] = typer.Option(None, '--metadata', help="JSON object"),
) -> None:
    """Register a client and print its generated secret once."""
    with _errors():
        repository = _maintenance().client_repository()
        client, secret = repository.create(
            client_id,
            name,
            grant_types=grant_type,
            scopes=scope,
            redirect_uris=redirect_uri or None,
            created_by=created_by,
            metadata=_parse_metadata(metadata),
        )
        _print_client(client)
        _print_secret(client.client_id, secret)


@clients_app.command('show')
def clients_show(client_id: str = typer.Argument(...)) -> None:
    """Show one client (without its secret hash)."""
    with _errors():
        _print_client(_maintenance().client_repository().get(client_id))


@clients_app.command('list')
def clients_list(
    include_inactive: bool = typer.Option(False, '--all', help="Include deactivated clients"),
) -> None:
    """List clients."""
    with _errors():
        clients = _maintenance().client_repository().list(include_inactive=include_inactive)
    if not clients:
        print_plain("No clients found.")
        return
    for client in clients:
        state = 'active' if client.is_active else 'inactive'
        print_plain(f"{client.client_id}\t{state}\t{client.client_name}\t{' '.join(client.scopes)}")


@clients_app.command('update')
def clients_update(
    client_id: str = typer.Argument(...),
    name: Optional[str] = typer.Option(None, '--name'),
    grant_type: List[str] = typer.Option([], '--grant-type'),
    scope: List[str] = typer.Option([], '--scope'),
    redirect_uri: List[str] = typer.Option([], '--redirect-uri'),
    metadata: Optional[str] = typer.Option(None, '--metadata', help="JSON object"),
) -> None:
    """Change the mutable fields of a client."""
    fields: Dict[str, Any] = {}
    if name is not None:
        fields['client_name'] = name
    if grant_type:
        fields['grant_types'] = grant_type
    if scope:
        fields['scopes'] = scope
    if redirect_uri:
        fields['redirect_uris'] = redirect_uri
    with _errors():
        if metadata is not None:
            fields['metadata'] = _parse_metadata(metadata)
        if not fields:
            raise ValueError("Nothing to update")
        _print_client(_maintenance().client_repository().update(client_id, **fields))


@clients_app.command('rotate-secret')
def clients_rotate_secret(client_id: str = typer.Argument(...)) -> None:
    """Replace the secret of a client and print the new one once."""
    with _errors():
        secret = _maintenance().client_repository().rotate_secret(client_id)
        _print_secret(client_id, secret)


@clients_app.command('deactivate')
def clients_deactivate(client_id: str = typer.Argument(...)) -> None:
    """Disable a client; the record is kept."""
    with _errors():
        _maintenance().client_repository().deactivate(client_id)
    print_status(OK, f"Client {client_id} deactivated")


@clients_app.command('activate')
def clients_activate(client_id: str = typer.Argument(...)) -> None:
    """Re-enable a deactivated client."""
    with _errors():
        client = _maintenance().client_repository().activate(client_id)
    print_status(OK, f"Client {client_id} activated")
    print_detail(client.client_name)


def run() -> None:
    app(prog_name='client-database')
