"""
Operator-facing terminal output
"""

import shutil
from typing import Optional

import typer

OK = 'ok'
WARNING = 'warning'
ERROR = 'error'


def _width() -> int:
    return shutil.get_terminal_size((80, 24)).columns


def print_separator(char: str = '=') -> None:
    typer.echo(char * _width())


def print_heading(title: str) -> None:
    print_separator('=')
    typer.secho(title, fg=typer.colors.CYAN)
    print_separator('-')


def print_status(status: str, message: str) -> None:
    if status == OK:
        typer.secho(f"✅ {message}", fg=typer.colors.GREEN)
    elif status == WARNING:
        typer.secho(f"⚠️  {message}", fg=typer.colors.YELLOW)
    else:
        typer.secho(f"❌ {message}", fg=typer.colors.RED)


def print_info(message: str) -> None:
    typer.secho(message, fg=typer.colors.CYAN)


def print_detail(message: str) -> None:
    typer.secho(f"  {message}", fg=typer.colors.CYAN)


def print_success(message: str) -> None:
    typer.secho(message, fg=typer.colors.GREEN)


def print_plain(message: str = '') -> None:
    typer.echo(message)


def is_affirmative(answer: Optional[str]) -> bool:
    """`y` or `yes`, in any case"""
    return bool(answer) and answer.strip().lower() in ('y', 'yes')


def is_explicit_yes(answer: Optional[str]) -> bool:
    """Only the full word `yes`, in any case"""
    return bool(answer) and answer.strip().lower() == 'yes'
