"""
Local backup artifacts

Backups are gzip-compressed mysqldump output named
<prefix><YYYY-MM-DD_HH-MM-SS><suffix>, e.g.
client_db_backup_2025-01-08_14-30-22.sql.gz.
"""

import gzip
import logging
import os
import zlib
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from client_database.config import BackupConfig

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class BackupNotFoundError(Exception):
    pass


class CorruptBackupError(Exception):
    pass


class BackupStore:
    """
    Directory of timestamped backup files
    """

    def __init__(
        self,
        directory: str,
        prefix: str = 'client_db_backup_',
        suffix: str = '.sql.gz',
        timestamp_format: str = '%Y-%m-%d_%H-%M-%S'
    ):
        self.directory = Path(directory)
        self.prefix = prefix
        self.suffix = suffix
        self.timestamp_format = timestamp_format

    @classmethod
    def from_config(cls, config: BackupConfig) -> 'BackupStore':
        return cls(
            directory=config.directory,
            prefix=config.file_prefix,
            suffix=config.file_suffix,
            timestamp_format=config.timestamp_format
        )

    def ensure(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def filename(self, when: datetime) -> str:
        return f"{self.prefix}{when.strftime(self.timestamp_format)}{self.suffix}"

    def new_path(self, now: Optional[datetime] = None) -> Path:
        return self.directory / self.filename(now or datetime.now())

    def timestamp(self, path: Path) -> Optional[datetime]:
        """Timestamp encoded in a backup file name, None for foreign files"""
        name = path.name
        if not (name.startswith(self.prefix) and name.endswith(self.suffix)):
            return None
        stamp = name[len(self.prefix):len(name) - len(self.suffix)]
        try:
            return datetime.strptime(stamp, self.timestamp_format)
        except ValueError:
            return None

    def list(self) -> List[Path]:
        """Backup files, newest first"""
        if not self.directory.is_dir():
            return []
        found = []
        for path in self.directory.iterdir():
            if not path.is_file():
                continue
            stamp = self.timestamp(path)
            if stamp is not None:
                found.append((stamp, path))
        found.sort(key=lambda item: (item[0], item[1].name), reverse=True)
        return [path for _, path in found]

    def latest(self) -> Optional[Path]:
        backups = self.list()
        return backups[0] if backups else None

    def resolve(self, name: Optional[str] = None) -> Path:
        """
        Locate a backup by file name or path; the latest one when no name is given

        Raises:
            BackupNotFoundError: If there is no such backup
        """
        if not name:
            latest = self.latest()
            if latest is None:
                raise BackupNotFoundError(f"No backups found in {self.directory}")
            return latest

        candidate = Path(name)
        if candidate.parent == Path('.'):
            candidate = self.directory / candidate
        if not candidate.is_file():
            raise BackupNotFoundError(f"Backup file not found: {candidate}")
        return candidate

    def prune(self, keep: int) -> List[Path]:
        """
        Remove all but the `keep` newest backups

        Returns:
            The removed files
        """
        if keep < 1:
            raise ValueError("keep must be at least 1")
        removed = self.list()[keep:]
        for path in removed:
            path.unlink()
            logger.debug("Removed old backup %s", path.name)
        return removed

    def clean_older_than(self, days: int, now: Optional[datetime] = None) -> List[Path]:
        """
        Remove backups whose file was last modified more than `days` days ago

        Returns:
            The removed files
        """
        cutoff = (now or datetime.now()) - timedelta(days=days)
        removed = []
        for path in self.list():
            if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
                path.unlink()
                removed.append(path)
        return removed


def human_size(num_bytes: int) -> str:
    """Size the way `du -h` prints it"""
    size = float(num_bytes)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if size < 1024 or unit == 'T':
            if unit == 'B':
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024


def _write_stream(path: Path, opener: Callable, chunks: Iterable[bytes]) -> int:
    written = 0
    try:
        with opener(path, 'wb') as out:
            for chunk in chunks:
                out.write(chunk)
                written += len(chunk)
    except BaseException:
        if os.path.exists(path):
            os.unlink(path)
        raise
    return written


def write_compressed(path: Path, chunks: Iterable[bytes]) -> int:
    """
    Stream chunks through gzip into a file

    A partially written file is removed when the stream fails.

    Returns:
        Number of uncompressed bytes written
    """
    return _write_stream(path, gzip.open, chunks)


def write_plain(path: Path, chunks: Iterable[bytes]) -> int:
    """Like write_compressed, without compression"""
    return _write_stream(path, open, chunks)


def read_decompressed(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with gzip.open(path, 'rb') as src:
        while True:
            chunk = src.read(chunk_size)
            if not chunk:
                return
            yield chunk


def decompressed_size(path: Path) -> int:
    """
    Count the uncompressed bytes of a backup

    Raises:
        CorruptBackupError: The file is not a complete gzip stream
    """
    # The gzip trailer only stores the size modulo 2**32, so count instead
    try:
        return sum(len(chunk) for chunk in read_decompressed(path))
    except (OSError, EOFError, zlib.error) as e:
        raise CorruptBackupError(f"Cannot read backup {path.name}: {e}") from e
