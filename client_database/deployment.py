"""
Lifecycle of the MySQL deployment: deploy, status, start/stop, update, cleanup
"""

import logging
import shutil
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from kubernetes.client.exceptions import ApiException

from client_database.config import OperatorConfig
from client_database.console import (
    ERROR,
    OK,
    WARNING,
    is_explicit_yes,
    print_detail,
    print_heading,
    print_info,
    print_plain,
    print_separator,
    print_status,
    print_success,
)
from client_database.kube import KubeClient, PodNotFoundError, WaitTimeout
from client_database.mysql import mysqladmin_ping_command
from client_database.templates import ManifestTemplates

logger = logging.getLogger(__name__)


def _age(created: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Age the way kubectl prints it: 3d, 5h, 12m, 40s"""
    if created is None:
        return 'unknown'
    delta = (now or datetime.now(timezone.utc)) - created
    seconds = max(int(delta.total_seconds()), 0)
    for unit, size in (('d', 86400), ('h', 3600), ('m', 60)):
        if seconds >= size:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


class Deployment:
    """
    Kubernetes resources of the client database
    """

    def __init__(
        self,
        config: OperatorConfig,
        kube: Optional[KubeClient],
        which: Optional[Callable[[str], Optional[str]]] = None
    ):
        self.config = config
        self.kube = kube
        self.namespace = config.cluster.namespace
        self._which = which or shutil.which

    def check_dependencies(self) -> bool:
        """
        Report which command line tools are on PATH

        Returns:
            False when a required tool is missing
        """
        print_heading("🔍 Checking dependencies...")
        ok = True
        for tool in self.config.required_tools:
            if self._which(tool):
                print_status(OK, f"{tool} found")
            else:
                print_status(ERROR, f"{tool} not found (required)")
                ok = False
        for tool in self.config.optional_tools:
            if self._which(tool):
                print_status(OK, f"{tool} found")
            else:
                print_status(WARNING, f"{tool} not found (optional)")
        return ok

    def _require_passwords(self) -> None:
        db = self.config.database
        missing = [
            name for name, value in (
                ('MYSQL_ROOT_PASSWORD', db.root_password),
                ('DB_MAINT_USERNAME', db.maint_username),
                ('DB_MAINT_PASSWORD', db.maint_password),
                ('MYSQL_AUTH_PASSWORD', db.auth_password),
            ) if not value
        ]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")

    def _apply(self, manifest: Dict) -> None:
        result = self.kube.apply(manifest)
        logger.debug("Applied %s/%s: %s", manifest['kind'], manifest['metadata']['name'], result)
        kind = manifest['kind'].lower()
        print_detail(f"{kind}/{manifest['metadata']['name']} {result}")

    def _recreate_secret(self) -> None:
        # Recreated rather than patched so removed keys do not linger
        self.kube.delete('Secret', self.config.cluster.secret_name, self.namespace)
        self._apply(ManifestTemplates.secret_manifest())

    def _wait_ready(self, timeout: int) -> bool:
        pod = self.config.cluster.pod_name
        print_info(f"⏳ Waiting for {pod} to become ready (timeout: {timeout}s)...")
        try:
            self.kube.wait_for_pod_ready(pod, self.namespace, timeout)
        except WaitTimeout as e:
            print_status(ERROR, str(e))
            return False
        print_status(OK, f"{pod} is ready")
        return True

    def deploy(self, loaded_env: Optional[List[str]] = None) -> bool:
        """
        Create or update every resource and wait for the database

        Args:
            loaded_env: Names of variables loaded from the .env file

        Returns:
            False when the pod did not become ready in time
        """
        self._require_passwords()
        cluster = self.config.cluster

        print_heading("🚀 Deploying client database")
        if loaded_env:
            print_info(f"Loaded from .env: {', '.join(loaded_env)}")

        if self.kube.namespace_exists(self.namespace):
            print_status(OK, f"Namespace '{self.namespace}' exists")
        else:
            self._apply(ManifestTemplates.namespace_manifest())

        print_heading("📦 Applying resources...")
        self._apply(ManifestTemplates.configmap_manifest())
        self._recreate_secret()
        self._apply(ManifestTemplates.service_manifest())
        self._apply(ManifestTemplates.statefulset_manifest())

        if not self._wait_ready(self.config.jobs.pod_ready_timeout):
            print_plain(f"   (Tip: kubectl describe pod {cluster.pod_name} -n {self.namespace})")
            return False

        print_separator('=')
        print_success("🎉 Deployment complete!")
        print_separator('-')
        print_info("Service details:")
        print_detail(f"Host: {cluster.service_dns}")
        print_detail(f"Port: {self.config.database.port}")
        print_detail(f"Database: {self.config.database.name}")
        print_plain()
        print_info("Next steps:")
        print_detail("client-database load-schema     # create tables, indexes and users")
        print_detail("client-database load-fixtures   # insert sample clients")
        print_detail("client-database health          # verify the database")
        print_separator('=')
        return True

    def status(self) -> bool:
        """
        Print the state of the deployment

        Returns:
            False when the namespace does not exist
        """
        cluster = self.config.cluster
        print_heading(f"📊 Client database status ({self.namespace})")

        if not self.kube.namespace_exists(self.namespace):
            print_status(ERROR, f"Namespace '{self.namespace}' not found. Run deploy first.")
            return False
        ns = self.kube.read_namespace(self.namespace)
        print_status(OK, f"Namespace '{self.namespace}' (age {_age(ns.metadata.creation_timestamp)})")
        print_detail(f"Resources: {self.kube.count_resources(self.namespace)}")

        print_heading("🗄️  StatefulSet")
        try:
            sts = self.kube.read_statefulset(cluster.statefulset_name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            print_status(ERROR, f"StatefulSet '{cluster.statefulset_name}' not found")
            sts = None
        if sts is not None:
            desired = sts.spec.replicas or 0
            ready = sts.status.ready_replicas or 0
            level = OK if desired and ready >= desired else WARNING
            print_status(level, f"{cluster.statefulset_name}: {ready}/{desired} ready")
            container = sts.spec.template.spec.containers[0]
            print_detail(f"Image: {container.image}")
            print_detail(f"Liveness probe: {'configured' if container.liveness_probe else 'missing'}")
            print_detail(f"Readiness probe: {'configured' if container.readiness_probe else 'missing'}")

        print_heading("🐳 Pods")
        pods = self.kube.list_pods(self.namespace, cluster.pod_selector)
        if not pods:
            print_status(WARNING, "No pods found")
        for pod in pods:
            ready = KubeClient.pod_is_ready(pod)
            print_status(
                OK if ready else WARNING,
                f"{pod.metadata.name}: {pod.status.phase}"
                f"{'' if ready else ' (not ready)'}, age {_age(pod.metadata.creation_timestamp)}"
            )

        print_heading("🔌 Connectivity")
        try:
            pod_name = self.kube.find_running_pod(self.namespace, cluster.pod_selector)
        except PodNotFoundError:
            print_status(WARNING, "No running pod to test")
        else:
            ping = self.kube.exec_command(
                self.namespace, pod_name, mysqladmin_ping_command(), check=False
            )
            if ping.returncode == 0:
                print_status(OK, "MySQL is responding")
            else:
                print_status(ERROR, "MySQL is not responding")

        print_heading("🌐 Service")
        try:
            svc = self.kube.read_service(cluster.service_name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            print_status(ERROR, f"Service '{cluster.service_name}' not found")
        else:
            kind = 'headless' if svc.spec.cluster_ip == 'None' else f'ClusterIP {svc.spec.cluster_ip}'
            ports = ', '.join(str(port.port) for port in (svc.spec.ports or []))
            print_status(OK, f"{cluster.service_name} ({kind}), ports: {ports}")
            print_detail(f"DNS: {cluster.service_dns}")

        print_heading("💾 Storage")
        pvcs = self.kube.list_pvcs(self.namespace, f'app={cluster.app_label}')
        if not pvcs:
            print_status(WARNING, "No PVCs found")
        for pvc in pvcs:
            bound = pvc.status.phase == 'Bound'
            print_status(OK if bound else WARNING, f"{pvc.metadata.name}: {pvc.status.phase}")

        print_separator('=')
        return True

    def start(self) -> bool:
        cluster = self.config.cluster
        print_heading("▶️  Starting database")
        self.kube.scale_statefulset(cluster.statefulset_name, self.namespace, 1)
        print_detail(f"statefulset/{cluster.statefulset_name} scaled to 1")
        return self._wait_ready(self.config.jobs.scale_up_timeout)

    def stop(self) -> None:
        cluster = self.config.cluster
        print_heading("⏹️  Stopping database")
        self.kube.scale_statefulset(cluster.statefulset_name, self.namespace, 0)
        print_status(OK, f"statefulset/{cluster.statefulset_name} scaled to 0 (data is kept)")

    def update(self) -> bool:
        """Re-apply configuration and restart the database pod"""
        self._require_passwords()
        cluster = self.config.cluster
        timeout = self.config.jobs.rollout_timeout

        print_heading("🔄 Updating deployment")
        self._apply(ManifestTemplates.configmap_manifest())
        self._recreate_secret()
        self._apply(ManifestTemplates.statefulset_manifest())

        self.kube.rollout_restart(cluster.statefulset_name, self.namespace)
        print_info(f"⏳ Waiting for rollout (timeout: {timeout}s)...")
        try:
            self.kube.wait_for_rollout(cluster.statefulset_name, self.namespace, timeout)
        except WaitTimeout as e:
            print_status(ERROR, str(e))
            return False
        print_status(OK, "Rollout complete")
        return True

    def cleanup(self, confirm: Callable[[str], str]) -> None:
        """
        Delete the deployment

        Persistent volumes go only after confirmation; the namespace is
        kept while volumes or jobs remain in it.
        """
        cluster = self.config.cluster
        print_heading(f"🧹 Cleaning up namespace {self.namespace}")

        for kind, name in (
            ('StatefulSet', cluster.statefulset_name),
            ('Service', cluster.service_name),
            ('ConfigMap', cluster.configmap_name),
            ('Secret', cluster.secret_name),
            ('ConfigMap', cluster.sql_configmap_name),
            ('Secret', cluster.sql_secret_name),
        ):
            if self.kube.delete(kind, name, self.namespace):
                print_detail(f"{kind.lower()}/{name} deleted")

        print_separator('-')
        print_status(WARNING, "Persistent volumes hold all database data.")
        remove_volumes = is_explicit_yes(confirm("Delete persistent volumes too? (yes/no)"))
        logger.info("Cleanup of %s, delete volumes: %s", self.namespace, remove_volumes)
        if remove_volumes:
            self.kube.delete_pvcs(self.namespace, f'app={cluster.app_label}')
            print_status(OK, "Persistent volume claims deleted")
        else:
            print_info("Persistent volume claims preserved")

        jobs = self.kube.list_jobs(self.namespace)
        if jobs:
            print_info(f"Jobs preserved for inspection: {', '.join(jobs)}")

        if remove_volumes and not jobs:
            self.kube.delete('Namespace', self.namespace)
            print_status(OK, f"Namespace '{self.namespace}' deleted")
        else:
            print_info(f"Namespace '{self.namespace}' kept")

        print_separator('=')
        print_success("✅ Cleanup complete")
        print_separator('=')
