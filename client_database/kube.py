"""
Kubernetes access for the client database tooling

Thin wrapper around the kubernetes client: resource reads and applies,
waits on cluster state, and command execution inside the database pod
over the exec websocket.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import kubernetes
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import ERROR_CHANNEL

logger = logging.getLogger(__name__)


class PodNotFoundError(Exception):
    """No running pod matches the selector"""

    def __init__(self, namespace: str, selector: str):
        super().__init__(
            f"No running MySQL pod found in namespace {namespace} with label {selector}"
        )
        self.namespace = namespace
        self.selector = selector


class ExecError(Exception):
    """A command run inside a pod exited with a non-zero status"""

    def __init__(self, command: str, returncode: int, stderr: str = ''):
        message = f"{command} failed with exit code {returncode}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class WaitTimeout(Exception):
    """Cluster state did not converge in time"""


@dataclass
class ExecResult:
    stdout: bytes
    stderr: str
    returncode: int

    @property
    def text(self) -> str:
        return self.stdout.decode('utf-8', 'replace')


def load_kube_config() -> None:
    """Use the in-cluster service account when available, kubeconfig otherwise"""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()


def _command_name(command: List[str]) -> str:
    # Skip `env NAME=value` prefixes; they carry passwords
    index = 0
    if command and command[0] == 'env':
        index = 1
        while index < len(command) and '=' in command[index]:
            index += 1
    program = command[index:]
    if not program:
        return 'command'
    # sh -c wrappers report the last program of the pipeline
    if len(program) >= 3 and program[:2] == ['sh', '-c']:
        return program[2].split('|')[-1].split()[0]
    return program[0]


class KubeClient:
    """
    Cluster operations used by deploy, status and the database commands
    """

    # kind -> (api attribute, resource suffix, namespaced)
    _RESOURCES = {
        'Namespace': ('core', 'namespace', False),
        'ConfigMap': ('core', 'namespaced_config_map', True),
        'Secret': ('core', 'namespaced_secret', True),
        'Service': ('core', 'namespaced_service', True),
        'PersistentVolumeClaim': ('core', 'namespaced_persistent_volume_claim', True),
        'StatefulSet': ('apps', 'namespaced_stateful_set', True),
        'Job': ('batch', 'namespaced_job', True),
        'CronJob': ('batch', 'namespaced_cron_job', True),
    }

    def __init__(
        self,
        core=None,
        apps=None,
        batch=None,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.core = core or kubernetes.client.CoreV1Api()
        self.apps = apps or kubernetes.client.AppsV1Api()
        self.batch = batch or kubernetes.client.BatchV1Api()
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Generic resources
    # ------------------------------------------------------------------

    def _resource(self, kind: str):
        try:
            api_name, suffix, namespaced = self._RESOURCES[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}")
        return getattr(self, api_name), suffix, namespaced

    def apply(self, manifest: Dict[str, Any]) -> str:
        """
        Create a resource, or patch it when it already exists

        Returns:
            'created' or 'configured'
        """
        api, suffix, namespaced = self._resource(manifest['kind'])
        name = manifest['metadata']['name']
        scope = {'namespace': manifest['metadata']['namespace']} if namespaced else {}

        try:
            getattr(api, f'create_{suffix}')(body=manifest, **scope)
            logger.debug("%s/%s created", manifest['kind'], name)
            return 'created'
        except ApiException as e:
            if e.status != 409:
                raise

        getattr(api, f'patch_{suffix}')(name=name, body=manifest, **scope)
        logger.debug("%s/%s configured", manifest['kind'], name)
        return 'configured'

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """
        Delete a resource, ignoring it when it does not exist

        Returns:
            True when something was deleted
        """
        api, suffix, namespaced = self._resource(kind)
        scope = {'namespace': namespace} if namespaced else {}
        try:
            getattr(api, f'delete_{suffix}')(
                name=name,
                propagation_policy='Background',
                **scope
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        logger.debug("%s/%s deleted", kind, name)
        return True

    def exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        api, suffix, namespaced = self._resource(kind)
        scope = {'namespace': namespace} if namespaced else {}
        try:
            getattr(api, f'read_{suffix}')(name=name, **scope)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    def namespace_exists(self, namespace: str) -> bool:
        return self.exists('Namespace', namespace)

    def read_namespace(self, namespace: str):
        return self.core.read_namespace(name=namespace)

    def count_resources(self, namespace: str) -> int:
        """Roughly what `kubectl get all` lists"""
        return sum([
            len(self.core.list_namespaced_pod(namespace).items),
            len(self.core.list_namespaced_service(namespace).items),
            len(self.apps.list_namespaced_stateful_set(namespace).items),
            len(self.batch.list_namespaced_job(namespace).items),
        ])

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    def find_running_pod(self, namespace: str, selector: str) -> str:
        """
        Raises:
            PodNotFoundError: If no pod matching the selector is running
        """
        pods = self.core.list_namespaced_pod(
            namespace,
            label_selector=selector,
            field_selector='status.phase=Running'
        )
        if not pods.items:
            raise PodNotFoundError(namespace, selector)
        return pods.items[0].metadata.name

    def list_pods(self, namespace: str, selector: Optional[str] = None) -> list:
        kwargs = {'label_selector': selector} if selector else {}
        return self.core.list_namespaced_pod(namespace, **kwargs).items

    def read_pod(self, name: str, namespace: str):
        return self.core.read_namespaced_pod(name=name, namespace=namespace)

    def pod_logs(self, name: str, namespace: str, tail_lines: Optional[int] = None) -> str:
        kwargs = {'tail_lines': tail_lines} if tail_lines else {}
        return self.core.read_namespaced_pod_log(name=name, namespace=namespace, **kwargs)

    def follow_pod_logs(self, name: str, namespace: str,
                        tail_lines: Optional[int] = None) -> Iterator[str]:
        kwargs = {'tail_lines': tail_lines} if tail_lines else {}
        watcher = kubernetes.watch.Watch()
        try:
            yield from watcher.stream(
                self.core.read_namespaced_pod_log,
                name=name,
                namespace=namespace,
                **kwargs
            )
        finally:
            watcher.stop()

    @staticmethod
    def pod_is_ready(pod) -> bool:
        for condition in (pod.status.conditions or []):
            if condition.type == 'Ready':
                return condition.status == 'True'
        return False

    def wait_for_pod_ready(self, name: str, namespace: str, timeout: int) -> None:
        def ready():
            try:
                return self.pod_is_ready(self.read_pod(name, namespace))
            except ApiException as e:
                if e.status == 404:
                    return False
                raise

        self._poll(ready, timeout, f"pod/{name} to become Ready")

    # ------------------------------------------------------------------
    # StatefulSets, services, volumes
    # ------------------------------------------------------------------

    def read_statefulset(self, name: str, namespace: str):
        return self.apps.read_namespaced_stateful_set(name=name, namespace=namespace)

    def scale_statefulset(self, name: str, namespace: str, replicas: int) -> None:
        self.apps.patch_namespaced_stateful_set_scale(
            name=name,
            namespace=namespace,
            body={'spec': {'replicas': replicas}}
        )

    def rollout_restart(self, name: str, namespace: str) -> None:
        """Same annotation `kubectl rollout restart` sets"""
        restarted_at = datetime.now(timezone.utc).isoformat()
        self.apps.patch_namespaced_stateful_set(
            name=name,
            namespace=namespace,
            body={
                'spec': {
                    'template': {
                        'metadata': {
                            'annotations': {
                                'kubectl.kubernetes.io/restartedAt': restarted_at
                            }
                        }
                    }
                }
            }
        )

    def wait_for_rollout(self, name: str, namespace: str, timeout: int) -> None:
        def rolled_out():
            sts = self.read_statefulset(name, namespace)
            desired = sts.spec.replicas or 0
            status = sts.status
            return (
                (status.observed_generation or 0) >= (sts.metadata.generation or 0)
                and (status.updated_replicas or 0) >= desired
                and (status.ready_replicas or 0) >= desired
                and status.current_revision == status.update_revision
            )

        self._poll(rolled_out, timeout, f"statefulset/{name} rollout")

    def read_service(self, name: str, namespace: str):
        return self.core.read_namespaced_service(name=name, namespace=namespace)

    def list_pvcs(self, namespace: str, selector: str) -> list:
        return self.core.list_namespaced_persistent_volume_claim(
            namespace,
            label_selector=selector
        ).items

    def delete_pvcs(self, namespace: str, selector: str) -> None:
        self.core.delete_collection_namespaced_persistent_volume_claim(
            namespace,
            label_selector=selector
        )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def list_jobs(self, namespace: str, selector: Optional[str] = None) -> List[str]:
        kwargs = {'label_selector': selector} if selector else {}
        try:
            jobs = self.batch.list_namespaced_job(namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return []
            raise
        return [job.metadata.name for job in jobs.items]

    def wait_for_job(self, name: str, namespace: str, timeout: int) -> str:
        """
        Wait until the job completes or fails

        Returns:
            'Complete' or 'Failed'

        Raises:
            WaitTimeout: If neither happens within the timeout
        """
        outcome = {}

        def finished():
            job = self.batch.read_namespaced_job_status(name=name, namespace=namespace)
            for condition in (job.status.conditions or []):
                if condition.type in ('Complete', 'Failed') and condition.status == 'True':
                    outcome['result'] = condition.type
                    return True
            return False

        self._poll(finished, timeout, f"job/{name} to complete")
        return outcome['result']

    def job_logs(self, name: str, namespace: str) -> str:
        pods = self.list_pods(namespace, f'job-name={name}')
        logs = []
        for pod in pods:
            try:
                logs.append(self.pod_logs(pod.metadata.name, namespace))
            except ApiException as e:
                logger.debug("No logs for %s: %s", pod.metadata.name, e.reason)
        return ''.join(logs)

    def describe_job(self, name: str, namespace: str) -> List[str]:
        """Short, human-readable summary of a job and its pods"""
        job = self.batch.read_namespaced_job_status(name=name, namespace=namespace)
        status = job.status
        lines = [
            f"Job: {name}",
            f"Active: {status.active or 0}  Succeeded: {status.succeeded or 0}  "
            f"Failed: {status.failed or 0}",
        ]
        for condition in (status.conditions or []):
            lines.append(f"Condition {condition.type}={condition.status}: "
                         f"{condition.reason or ''} {condition.message or ''}".rstrip())
        for pod in self.list_pods(namespace, f'job-name={name}'):
            lines.append(f"Pod {pod.metadata.name}: {pod.status.phase}")
        return lines

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    def _open_exec(self, namespace: str, pod: str, command: List[str], stdin: bool):
        logger.debug("exec in %s/%s: %s", namespace, pod, _command_name(command))
        return stream(
            self.core.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            command=command,
            stderr=True,
            stdin=stdin,
            stdout=True,
            tty=False,
            binary=True,
            _preload_content=False
        )

    @staticmethod
    def _drain(resp, stdout: List[bytes], stderr: List[bytes]) -> None:
        if resp.peek_stdout():
            stdout.append(resp.read_stdout())
        if resp.peek_stderr():
            stderr.append(resp.read_stderr())

    @staticmethod
    def _exit_status(resp, command: List[str]) -> int:
        if not resp.peek_channel(ERROR_CHANNEL):
            raise ExecError(
                _command_name(command), -1,
                'exec stream closed without an exit status'
            )
        return resp.returncode

    def exec_stream_out(self, namespace: str, pod: str, command: List[str]) -> Iterator[bytes]:
        """
        Run a command in a pod and yield its stdout as it arrives

        Raises:
            ExecError: After the last chunk, if the command failed
        """
        resp = self._open_exec(namespace, pod, command, stdin=False)
        stderr: List[bytes] = []
        try:
            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    yield resp.read_stdout()
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
            while resp.peek_stdout():
                yield resp.read_stdout()
            if resp.peek_stderr():
                stderr.append(resp.read_stderr())
            returncode = self._exit_status(resp, command)
        finally:
            resp.close()

        if returncode != 0:
            raise ExecError(_command_name(command), returncode, _decode(stderr))

    def exec_stream_in(
        self,
        namespace: str,
        pod: str,
        command: List[str],
        chunks: Iterable[bytes],
        check: bool = True
    ) -> ExecResult:
        """
        Run a command in a pod, feeding it the given chunks on stdin

        Raises:
            ExecError: If the command failed and check is set
        """
        resp = self._open_exec(namespace, pod, command, stdin=True)
        return self._communicate(resp, command, chunks, check)

    def exec_command(
        self,
        namespace: str,
        pod: str,
        command: List[str],
        stdin: Optional[bytes] = None,
        check: bool = True
    ) -> ExecResult:
        """Run a command in a pod and collect its output"""
        resp = self._open_exec(namespace, pod, command, stdin=stdin is not None)
        chunks = [stdin] if stdin is not None else []
        return self._communicate(resp, command, chunks, check)

    def _communicate(self, resp, command: List[str], chunks: Iterable[bytes], check: bool) -> ExecResult:
        stdout: List[bytes] = []
        stderr: List[bytes] = []
        try:
            for chunk in chunks:
                if not resp.is_open():
                    break
                resp.write_stdin(chunk)
                resp.update(timeout=0)
                self._drain(resp, stdout, stderr)
            while resp.is_open():
                resp.update(timeout=1)
                self._drain(resp, stdout, stderr)
            self._drain(resp, stdout, stderr)
            returncode = self._exit_status(resp, command)
        finally:
            resp.close()

        result = ExecResult(b''.join(stdout), _decode(stderr), returncode)
        if check and result.returncode != 0:
            raise ExecError(_command_name(command), result.returncode, result.stderr)
        return result

    # ------------------------------------------------------------------

    def _poll(self, check: Callable[[], bool], timeout: float, what: str) -> None:
        deadline = self._clock() + timeout
        while True:
            if check():
                return
            if self._clock() >= deadline:
                raise WaitTimeout(f"Timed out after {timeout}s waiting for {what}")
            self._sleep(self.poll_interval)


def _decode(chunks: List[bytes]) -> str:
    return b''.join(chunks).decode('utf-8', 'replace')
