"""
Configuration management for the client database tooling
"""

import os
import re
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from dotenv import dotenv_values


@dataclass
class ClusterConfig:
    """Names of the Kubernetes resources that make up the deployment"""
    namespace: str = 'client-database'
    app_label: str = 'client-database'
    component_label: str = 'mysql'

    statefulset_name: str = 'client-database-mysql'
    service_name: str = 'client-database'
    configmap_name: str = 'client-database-config'
    secret_name: str = 'client-database-secrets'
    sql_configmap_name: str = 'client-database-sql'
    sql_secret_name: str = 'client-database-sql-users'

    load_schema_job: str = 'client-database-load-schema'
    load_fixtures_job: str = 'client-database-load-fixtures'

    @property
    def pod_selector(self) -> str:
        return f'app={self.app_label},component={self.component_label}'

    @property
    def pod_name(self) -> str:
        # StatefulSet pods are named <statefulset>-<ordinal>
        return f'{self.statefulset_name}-0'

    @property
    def service_dns(self) -> str:
        return f'{self.service_name}.{self.namespace}.svc.cluster.local'


@dataclass
class DatabaseConfig:
    """Connection settings and credentials for the MySQL instance"""
    name: str = 'client_db'
    table: str = 'oauth2_clients'
    port: int = 3306
    image: str = 'client-database-mysql:latest'
    storage_size: str = '1Gi'

    maint_username: str = ''
    maint_password: str = ''
    root_password: str = ''
    auth_password: str = ''

    # Cost factor for client secret hashes
    bcrypt_rounds: int = 10


@dataclass
class BackupConfig:
    """Local backup artifacts and in-cluster scheduled backups"""
    directory: str = 'db/data/backups'
    file_prefix: str = 'client_db_backup_'
    file_suffix: str = '.sql.gz'
    timestamp_format: str = '%Y-%m-%d_%H-%M-%S'
    keep_last: int = 5
    max_age_days: int = 30
    schema_export_path: str = 'db/data/exports/schema.sql'

    # Scheduled backups (operator)
    default_schedule: str = '0 2 * * *'  # Daily at 2 AM
    default_storage_size: str = '5Gi'
    successful_jobs_history_limit: int = 3
    failed_jobs_history_limit: int = 1
    backup_timeout_seconds: int = 3600

    memory_request: str = '256Mi'
    memory_limit: str = '512Mi'
    cpu_request: str = '100m'
    cpu_limit: str = '500m'


@dataclass
class JobConfig:
    """Timeouts for waiting on cluster state, in seconds"""
    pod_ready_timeout: int = 120
    scale_up_timeout: int = 90
    rollout_timeout: int = 120
    job_timeout: int = 60
    poll_interval: float = 2.0


@dataclass
class OperatorConfig:
    """Main configuration"""

    name: str = 'client-database'
    version: str = '0.1.0'

    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    jobs: JobConfig = field(default_factory=JobConfig)

    # Tools looked for by check-deps
    required_tools: List[str] = field(default_factory=lambda: ['kubectl'])
    optional_tools: List[str] = field(default_factory=lambda: [
        'docker',
        'minikube',
        'mysql',
    ])

    # Operator behavior
    reconciliation_interval: int = 300

    log_level: str = field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO'))

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'OperatorConfig':
        """
        Create configuration from environment variables

        Environment variables:
        - NAMESPACE: Namespace of the deployment (default: client-database)
        - MYSQL_DATABASE: Database name (default: client_db)
        - DB_MAINT_USERNAME / DB_MAINT_PASSWORD: Maintenance account
        - MYSQL_ROOT_PASSWORD: Root password, used by deploy and status
        - MYSQL_AUTH_PASSWORD: Password of the auth-service account
        - MYSQL_IMAGE: MySQL image (default: client-database-mysql:latest)
        - BACKUP_DIR: Local backup directory (default: db/data/backups)
        - BACKUP_KEEP_LAST: Backups kept after each backup (default: 5)
        - DEFAULT_BACKUP_SCHEDULE: Cron schedule for scheduled backups
        - LOG_LEVEL: Logging level (default: INFO)
        """
        env = os.environ if environ is None else environ
        config = cls()

        if namespace := env.get('NAMESPACE'):
            config.cluster.namespace = namespace

        if database := env.get('MYSQL_DATABASE'):
            config.database.name = database

        if image := env.get('MYSQL_IMAGE'):
            config.database.image = image

        config.database.maint_username = env.get('DB_MAINT_USERNAME', '')
        config.database.maint_password = env.get('DB_MAINT_PASSWORD', '')
        config.database.root_password = env.get('MYSQL_ROOT_PASSWORD', '')
        config.database.auth_password = env.get('MYSQL_AUTH_PASSWORD', '')

        if backup_dir := env.get('BACKUP_DIR'):
            config.backup.directory = backup_dir

        if keep_last := env.get('BACKUP_KEEP_LAST'):
            try:
                config.backup.keep_last = int(keep_last)
            except ValueError:
                raise ValueError(f"BACKUP_KEEP_LAST must be an integer, got {keep_last!r}")

        if schedule := env.get('DEFAULT_BACKUP_SCHEDULE'):
            config.backup.default_schedule = schedule

        if log_level := env.get('LOG_LEVEL'):
            config.log_level = log_level

        return config

    def validate(self) -> None:
        """
        Validate configuration

        Raises:
            ValueError: If configuration is invalid
        """
        if self.reconciliation_interval < 60:
            raise ValueError("Reconciliation interval must be at least 60 seconds")

        if self.backup.keep_last < 1:
            raise ValueError("At least one backup must be kept")

        if self.backup.max_age_days < 1:
            raise ValueError("Backup max age must be at least 1 day")

        if self.backup.backup_timeout_seconds < 60:
            raise ValueError("Backup timeout must be at least 60 seconds")

        if not 4 <= self.database.bcrypt_rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")

        if not self.cluster.namespace:
            raise ValueError("Namespace must not be empty")

        if not re.fullmatch(r'[A-Za-z0-9_]+', self.database.name):
            raise ValueError(f"Invalid database name: {self.database.name!r}")

    def require_maint_credentials(self) -> None:
        """
        Raises:
            ValueError: If the maintenance account is not configured
        """
        missing = [
            name for name, value in (
                ('DB_MAINT_USERNAME', self.database.maint_username),
                ('DB_MAINT_PASSWORD', self.database.maint_password),
            ) if not value
        ]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")

    def sql_variables(self) -> Dict[str, str]:
        """Values substituted into ${NAME} placeholders of the SQL templates"""
        return {
            'MYSQL_DATABASE': self.database.name,
            'DB_MAINT_USERNAME': self.database.maint_username,
            'DB_MAINT_PASSWORD': self.database.maint_password,
            'MYSQL_AUTH_PASSWORD': self.database.auth_password,
        }


def load_env_file(path: str = '.env') -> List[str]:
    """
    Export the variables of a dotenv file into the process environment

    Variables that are already set are left untouched.

    Returns:
        Names of the variables that were newly set, sorted
    """
    if not os.path.isfile(path):
        return []

    loaded = []
    for key, value in dotenv_values(path).items():
        if value is None or key in os.environ:
            continue
        os.environ[key] = value
        loaded.append(key)
    return sorted(loaded)


# Global configuration instance
_config: Optional[OperatorConfig] = None


def get_config() -> OperatorConfig:
    """
    Get the global configuration instance (singleton pattern)

    Returns:
        OperatorConfig: The global configuration
    """
    global _config
    if _config is None:
        _config = OperatorConfig.from_env()
        _config.validate()
    return _config


def set_config(config: Optional[OperatorConfig]) -> None:
    """
    Set the global configuration instance

    Passing None drops the instance so the next get_config() re-reads
    the environment.

    Args:
        config: New configuration instance
    """
    global _config
    if config is not None:
        config.validate()
    _config = config
