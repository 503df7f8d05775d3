"""
Database operations run against the MySQL pod: backup, restore, schema
export and loading, health checks, credential administration access.
"""

import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from client_database.backups import (
    BackupStore,
    decompressed_size,
    human_size,
    read_decompressed,
    write_compressed,
    write_plain,
)
from client_database.clients import ClientRepository
from client_database.config import OperatorConfig
from client_database.console import (
    ERROR,
    OK,
    WARNING,
    is_affirmative,
    print_detail,
    print_heading,
    print_info,
    print_plain,
    print_separator,
    print_status,
    print_success,
)
from client_database.kube import ExecError, KubeClient, PodNotFoundError, WaitTimeout
from client_database.mysql import (
    Credentials,
    bounded_stdin_command,
    database_statistics_sql,
    format_uptime,
    interactive_mysql_command,
    mysql_command,
    mysqldump_command,
    parse_rows,
    status_variables_sql,
)
from client_database import schema
from client_database.templates import ManifestTemplates

logger = logging.getLogger(__name__)


class Maintenance:
    """
    Operations that talk to the database inside the running pod
    """

    def __init__(
        self,
        config: OperatorConfig,
        kube: Optional[KubeClient],
        store: Optional[BackupStore] = None,
        run_interactive: Callable[[List[str]], int] = subprocess.call
    ):
        self.config = config
        self.kube = kube
        self.store = store or BackupStore.from_config(config.backup)
        self.namespace = config.cluster.namespace
        self._run_interactive = run_interactive

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def find_pod(self) -> str:
        print_heading(f"🚀 Finding MySQL pod in namespace {self.namespace}...")
        try:
            pod = self.kube.find_running_pod(self.namespace, self.config.cluster.pod_selector)
        except PodNotFoundError as e:
            print_status(ERROR, str(e))
            print_plain(f"   (Tip: Check 'kubectl get pods -n {self.namespace}' to see pod status.)")
            raise
        print_status(OK, f"Found pod: {pod}")
        return pod

    def run_sql(self, pod: str, sql: str, credentials: Optional[Credentials] = None,
                use_database: bool = True) -> str:
        credentials = credentials or Credentials.maint(self.config)
        command = mysql_command(credentials, sql, use_database=use_database)
        return self.kube.exec_command(self.namespace, pod, command).text

    def print_statistics(self, pod: str, title: str) -> None:
        print_heading(title)
        sql = database_statistics_sql(self.config.database.name)
        for row in parse_rows(self.run_sql(pod, sql)):
            print_detail(row[0])

    def client_repository(self) -> ClientRepository:
        """Credential records of the running database"""
        self.config.require_maint_credentials()
        pod = self.kube.find_running_pod(self.namespace, self.config.cluster.pod_selector)
        return ClientRepository(
            lambda sql: self.run_sql(pod, sql),
            rounds=self.config.database.bcrypt_rounds
        )

    # ------------------------------------------------------------------
    # Backup and restore
    # ------------------------------------------------------------------

    def backup(self, now: Optional[datetime] = None) -> Path:
        """
        Dump the database into a new compressed backup file

        Returns:
            Path of the backup file
        """
        self.config.require_maint_credentials()
        self.store.ensure()
        path = self.store.new_path(now)
        print_info(f"📁 Backup directory ensured at: {self.store.directory}")

        pod = self.find_pod()
        self.print_statistics(pod, "📊 Getting database statistics...")

        print_heading(f"📦 Creating backup from pod '{pod}'...")
        command = mysqldump_command(Credentials.maint(self.config))
        try:
            write_compressed(path, self.kube.exec_stream_out(self.namespace, pod, command))
        except ExecError:
            print_status(ERROR, "Backup failed.")
            raise
        print_status(OK, "Backup completed successfully.")
        size = human_size(path.stat().st_size)

        keep = self.config.backup.keep_last
        print_heading(f"🧹 Cleaning up old backups (keeping last {keep})...")
        self.store.prune(keep)
        print_info(f"📁 Backups remaining: {len(self.store.list())}")

        print_separator('=')
        print_success("🎉 Database backup completed successfully!")
        print_info(f"📁 Backup file: {path}")
        print_info(f"📦 Backup size: {size}")
        print_info(f"⏰ Backup completed at: {datetime.now():%c}")
        print_separator('=')
        return path

    def restore(self, name: Optional[str], confirm: Callable[[str], str]) -> bool:
        """
        Replace the database contents with a backup

        Args:
            name: Backup file name or path; the latest backup when empty
            confirm: Asks the operator a question and returns the answer

        Returns:
            False when the operator cancelled
        """
        self.config.require_maint_credentials()
        path = self.store.resolve(name)
        if not name:
            print_info(f"ℹ️  No backup file specified, using latest: {path.name}")

        print_heading("🔍 Validating backup file...")
        print_success(f"✅ Backup file found: {path.name}")
        size = human_size(path.stat().st_size)
        print_info(f"📦 Backup size: {size}")

        print_separator('=')
        print_status(WARNING, "WARNING: This will restore the database from backup!")
        print_plain("   All current data will be replaced.")
        print_separator('-')
        print_info(f"Backup file: {path.name}")
        print_info(f"Database: {self.config.database.name}")
        print_plain()
        if not is_affirmative(confirm("Are you sure you want to continue? [y/N]")):
            print_separator('=')
            print_status(WARNING, "Restore cancelled by user.")
            return False

        total = decompressed_size(path)
        pod = self.find_pod()
        self.print_statistics(pod, "📊 Getting current database statistics...")

        print_heading("📥 Restoring database from backup...")
        print_info("This may take several minutes depending on backup size...")
        command = bounded_stdin_command(
            mysql_command(Credentials.maint(self.config), silent=False),
            total
        )
        try:
            self.kube.exec_stream_in(self.namespace, pod, command, read_decompressed(path))
        except ExecError:
            print_status(ERROR, "Restore failed.")
            raise
        print_status(OK, "Restore completed successfully.")

        self.print_statistics(pod, "📊 Getting restored database statistics...")

        print_separator('=')
        print_success("🎉 Database restore completed successfully!")
        print_info(f"📁 Restored from: {path.name}")
        print_info(f"📦 Backup size: {size}")
        print_info(f"⏰ Restore completed at: {datetime.now():%c}")
        print_separator('=')
        return True

    def list_backups(self) -> List[Path]:
        backups = self.store.list()
        if not backups:
            print_plain(f"No backups found in {self.store.directory}")
            return backups
        for path in backups:
            stat = path.stat()
            modified = datetime.fromtimestamp(stat.st_mtime)
            print_plain(f"{human_size(stat.st_size):>8}  {modified:%Y-%m-%d %H:%M}  {path.name}")
        return backups

    def clean_backups(self, days: Optional[int] = None) -> List[Path]:
        days = days or self.config.backup.max_age_days
        print_info(f"Cleaning backups older than {days} days...")
        removed = self.store.clean_older_than(days)
        for path in removed:
            print_detail(f"removed {path.name}")
        print_status(OK, f"Cleanup complete ({len(removed)} removed)")
        return removed

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def export_schema(self, path: Optional[str] = None) -> Path:
        self.config.require_maint_credentials()
        target = Path(path or self.config.backup.schema_export_path)
        pod = self.find_pod()
        target.parent.mkdir(parents=True, exist_ok=True)

        print_heading(f"📋 Exporting schema to: {target}")
        command = mysqldump_command(Credentials.maint(self.config), schema_only=True)
        try:
            write_plain(target, self.kube.exec_stream_out(self.namespace, pod, command))
        except ExecError:
            print_status(ERROR, "Failed to export schema.")
            raise
        print_status(OK, f"Schema exported successfully to: {target}")
        print_separator('=')
        return target

    def load_schema(self) -> bool:
        """
        Create the database, the table and its indexes, and the accounts

        Runs as a Job connecting as root, since it creates users.
        """
        self.config.require_maint_credentials()
        variables = self.config.sql_variables()
        cluster = self.config.cluster

        schema_files = schema.render_group(schema.SCHEMA, variables)
        user_files = schema.render_group(schema.USERS, variables)
        self.kube.apply(ManifestTemplates.sql_configmap_manifest(cluster.sql_configmap_name, schema_files))
        self.kube.apply(ManifestTemplates.sql_secret_manifest(cluster.sql_secret_name, user_files))

        job = ManifestTemplates.sql_job_manifest(
            cluster.load_schema_job,
            [('ConfigMap', cluster.sql_configmap_name), ('Secret', cluster.sql_secret_name)],
            user_key='',
            password_key='MYSQL_ROOT_PASSWORD'
        )
        ok = self._run_job(job, "🚀 Applying database initialization job...")
        if ok:
            print_separator('=')
            print_success("✅ Database initialization complete.")
            print_separator('=')
        return ok

    def load_fixtures(self) -> bool:
        """Insert the sample clients"""
        self.config.require_maint_credentials()
        cluster = self.config.cluster
        name = f'{cluster.sql_configmap_name}-fixtures'
        files = schema.render_group(schema.FIXTURES, self.config.sql_variables())
        self.kube.apply(ManifestTemplates.sql_configmap_manifest(name, files))

        job = ManifestTemplates.sql_job_manifest(cluster.load_fixtures_job, [('ConfigMap', name)])
        ok = self._run_job(job, "🚀 Applying fixture loading job...")
        if ok:
            print_separator('=')
            print_success("✅ Test fixtures loaded.")
            print_separator('=')
        return ok

    def _run_job(self, job: dict, title: str) -> bool:
        name = job['metadata']['name']
        timeout = self.config.jobs.job_timeout

        print_heading(title)
        # A failed run is kept for debugging; replace it
        if self.kube.delete('Job', name, self.namespace):
            print_detail(f"Removed previous job '{name}'")
        self.kube.apply(job)

        print_heading(f"⏳ Waiting for job '{name}' to complete (timeout: {timeout}s)...")
        try:
            outcome = self.kube.wait_for_job(name, self.namespace, timeout)
        except WaitTimeout as e:
            logger.debug("%s", e)
            outcome = 'Timeout'

        if outcome == 'Complete':
            print_success("✅ Job completed successfully.")
            print_info("📜 Job logs:")
            print_plain(self.kube.job_logs(name, self.namespace).rstrip())
            print_separator('-')
            print_info("🧹 Cleaning up job...")
            self.kube.delete('Job', name, self.namespace)
            return True

        print_status(ERROR, "Job failed or timed out. Logs preserved for debugging.")
        print_separator('-')
        for line in self.kube.describe_job(name, self.namespace):
            print_plain(line)
        print_plain(self.kube.job_logs(name, self.namespace).rstrip())
        return False

    # ------------------------------------------------------------------
    # Health and access
    # ------------------------------------------------------------------

    def health(self) -> bool:
        """
        Check namespace, pod, connectivity and report database statistics

        Returns:
            False when the database is not reachable
        """
        self.config.require_maint_credentials()
        print_heading("🏥 MySQL Database Health Check")

        if not self.kube.namespace_exists(self.namespace):
            print_status(ERROR, f"Namespace '{self.namespace}' not found.")
            return False
        print_status(OK, f"Namespace '{self.namespace}' exists.")

        print_heading("🔍 Finding MySQL pod...")
        try:
            pod = self.kube.find_running_pod(self.namespace, self.config.cluster.pod_selector)
        except PodNotFoundError:
            print_status(ERROR, "No running MySQL pod found.")
            print_info("Available pods in namespace:")
            for item in self.kube.list_pods(self.namespace):
                print_detail(f"{item.metadata.name}  {item.status.phase}")
            return False
        print_status(OK, f"Found pod: {pod}")

        details = self.kube.read_pod(pod, self.namespace)
        print_status(OK, f"Pod status: {details.status.phase}")
        print_info(f"📅 Pod age: {details.metadata.creation_timestamp}")

        print_heading("🔌 Checking MySQL connectivity...")
        credentials = Credentials.maint(self.config)
        probe = self.kube.exec_command(
            self.namespace, pod,
            mysql_command(credentials, 'SELECT 1;', use_database=False),
            check=False
        )
        if probe.returncode != 0:
            print_status(ERROR, "MySQL connection failed.")
            return False
        print_status(OK, "MySQL connection successful.")

        self.print_statistics(pod, "📊 Database Statistics")

        print_heading("👥 Current User Info")
        for row in parse_rows(self.run_sql(pod, "SELECT CURRENT_USER(), DATABASE();")):
            print_detail('  '.join(row))

        print_heading("📈 MySQL Status")
        for row in parse_rows(self.run_sql(pod, status_variables_sql(), use_database=False)):
            name, value = row[0], row[1]
            if name == 'Uptime':
                value = format_uptime(int(value))
            print_detail(f"{name}: {value}")

        print_heading("🔑 OAuth2 Clients")
        sql = schema.health_check_sql(self.config.sql_variables())
        for row in parse_rows(self.run_sql(pod, sql)):
            _, total, active, inactive, checked_at = row
            print_detail(f"Total: {total}  Active: {active}  Inactive: {inactive}  "
                         f"(checked at {checked_at})")

        print_heading("💾 Storage Status")
        pvcs = self.kube.list_pvcs(self.namespace, f'app={self.config.cluster.app_label}')
        if pvcs:
            pvc = pvcs[0]
            print_status(OK, f"PVC: {pvc.metadata.name}")
            print_detail(f"Status: {pvc.status.phase}")
            print_detail(f"Size: {pvc.spec.resources.requests.get('storage', 'unknown')}")
        else:
            print_status(WARNING, "No PVC found.")

        print_heading("🔍 Recent Logs (last 10 lines)")
        for line in self.kube.pod_logs(pod, self.namespace, tail_lines=10).splitlines():
            print_plain(f"  {line}")

        print_separator('=')
        print_success("🎉 Health check completed!")
        print_separator('=')
        return True

    def connect(self) -> int:
        """
        Open an interactive mysql shell in the pod

        Returns:
            Exit status of the shell session
        """
        self.config.require_maint_credentials()
        pod = self.find_pod()
        print_heading(f"📂 Connecting to database: {self.config.database.name}")
        command = [
            'kubectl', 'exec', '-it', '-n', self.namespace, pod, '--',
        ] + interactive_mysql_command(self.config.database.name)
        status = self._run_interactive(command)
        print_separator('=')
        print_success("✅ MySQL session ended.")
        print_separator('=')
        return status

    def logs(self, tail: Optional[int] = None, follow: bool = False) -> None:
        pod = self.config.cluster.pod_name
        if follow:
            for line in self.kube.follow_pod_logs(pod, self.namespace, tail_lines=tail):
                print_plain(line)
            return
        print_plain(self.kube.pod_logs(pod, self.namespace, tail_lines=tail).rstrip())
