from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest
from kubernetes.client.exceptions import ApiException

from client_database.config import OperatorConfig, set_config
from client_database.kube import ExecError, ExecResult, PodNotFoundError, WaitTimeout

POD = 'client-database-mysql-0'


@pytest.fixture(autouse=True)
def config(monkeypatch, tmp_path):
    for name in ('NAMESPACE', 'MYSQL_DATABASE', 'DB_MAINT_USERNAME', 'DB_MAINT_PASSWORD',
                 'MYSQL_ROOT_PASSWORD', 'MYSQL_AUTH_PASSWORD', 'BACKUP_DIR',
                 'BACKUP_KEEP_LAST', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)

    cfg = OperatorConfig()
    cfg.database.maint_username = 'maint'
    cfg.database.maint_password = 'maint-pw'
    cfg.database.root_password = 'root-pw'
    cfg.database.auth_password = 'auth-pw'
    cfg.database.bcrypt_rounds = 4
    cfg.backup.directory = str(tmp_path / 'backups')
    cfg.backup.schema_export_path = str(tmp_path / 'exports' / 'schema.sql')
    set_config(cfg)
    yield cfg
    set_config(None)


def pod(name=POD, phase='Running', ready=True, created=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, creation_timestamp=created),
        status=SimpleNamespace(
            phase=phase,
            conditions=[SimpleNamespace(type='Ready', status='True' if ready else 'False')],
        ),
    )


def pvc(name='mysql-data-client-database-mysql-0', phase='Bound', size='1Gi'):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(phase=phase),
        spec=SimpleNamespace(resources=SimpleNamespace(requests={'storage': size})),
    )


def statefulset(replicas=1, ready=1):
    container = SimpleNamespace(
        image='client-database-mysql:latest',
        liveness_probe=object(),
        readiness_probe=object(),
    )
    return SimpleNamespace(
        spec=SimpleNamespace(
            replicas=replicas,
            template=SimpleNamespace(spec=SimpleNamespace(containers=[container])),
        ),
        status=SimpleNamespace(ready_replicas=ready),
    )


def service(cluster_ip='None'):
    return SimpleNamespace(
        spec=SimpleNamespace(cluster_ip=cluster_ip, ports=[SimpleNamespace(port=3306)]),
    )


class FakeKube:
    """In-memory stand-in for KubeClient"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.running_pod: Optional[str] = POD
        self.namespaces = {'client-database'}
        self.existing: set = set()
        self.pods = [pod()]
        self.pvcs = [pvc()]
        self.jobs: List[str] = []
        self.job_outcome = 'Complete'
        self.pod_ready = True
        self.rollout_ok = True
        self.dump_chunks = [b'-- dump\n', b'CREATE TABLE t (id int);\n']
        self.dump_error: Optional[ExecError] = None
        self.stdin: List[bytes] = []
        self.stream_in_error: Optional[ExecError] = None
        self.sql_responses: Dict[str, str] = {}
        self.exec_returncode = 0
        self.log_text = 'line 1\nline 2\n'
        self.sql_handler: Optional[Callable[[str], str]] = None
        self.statefulset = statefulset()
        self.service = service()

    # resources

    def apply(self, manifest):
        key = (manifest['kind'], manifest['metadata']['name'])
        self.calls.append(('apply', manifest))
        result = 'configured' if key in self.existing else 'created'
        self.existing.add(key)
        return result

    def delete(self, kind, name, namespace=None):
        self.calls.append(('delete', kind, name))
        key = (kind, name)
        if key in self.existing:
            self.existing.discard(key)
            return True
        return False

    def exists(self, kind, name, namespace=None):
        return (kind, name) in self.existing

    def applied(self, kind=None):
        return [c[1] for c in self.calls if c[0] == 'apply' and (kind is None or c[1]['kind'] == kind)]

    # namespaces

    def namespace_exists(self, namespace):
        return namespace in self.namespaces

    def read_namespace(self, namespace):
        return SimpleNamespace(metadata=SimpleNamespace(creation_timestamp=None))

    def count_resources(self, namespace):
        return 4

    # pods

    def find_running_pod(self, namespace, selector):
        if self.running_pod is None:
            raise PodNotFoundError(namespace, selector)
        return self.running_pod

    def list_pods(self, namespace, selector=None):
        return self.pods

    def read_pod(self, name, namespace):
        return pod(name)

    def pod_logs(self, name, namespace, tail_lines=None):
        self.calls.append(('pod_logs', name, tail_lines))
        return self.log_text

    def follow_pod_logs(self, name, namespace, tail_lines=None):
        self.calls.append(('follow_pod_logs', name, tail_lines))
        yield from self.log_text.splitlines()

    def wait_for_pod_ready(self, name, namespace, timeout):
        self.calls.append(('wait_for_pod_ready', name, timeout))
        if not self.pod_ready:
            raise WaitTimeout(f"Timed out after {timeout}s waiting for pod/{name} to become Ready")

    # statefulsets, services, volumes

    def read_statefulset(self, name, namespace):
        if self.statefulset is None:
            raise ApiException(status=404, reason='Not Found')
        return self.statefulset

    def read_service(self, name, namespace):
        if self.service is None:
            raise ApiException(status=404, reason='Not Found')
        return self.service

    def scale_statefulset(self, name, namespace, replicas):
        self.calls.append(('scale', name, replicas))

    def rollout_restart(self, name, namespace):
        self.calls.append(('rollout_restart', name))

    def wait_for_rollout(self, name, namespace, timeout):
        self.calls.append(('wait_for_rollout', name, timeout))
        if not self.rollout_ok:
            raise WaitTimeout("rollout")

    def list_pvcs(self, namespace, selector):
        return self.pvcs

    def delete_pvcs(self, namespace, selector):
        self.calls.append(('delete_pvcs', selector))

    # jobs

    def list_jobs(self, namespace, selector=None):
        return list(self.jobs)

    def wait_for_job(self, name, namespace, timeout):
        self.calls.append(('wait_for_job', name, timeout))
        if self.job_outcome == 'Timeout':
            raise WaitTimeout(f"Timed out after {timeout}s waiting for job/{name} to complete")
        return self.job_outcome

    def job_logs(self, name, namespace):
        return 'Executing /sql/00/001.sql\n'

    def describe_job(self, name, namespace):
        return [f'Job: {name}', 'Active: 0  Succeeded: 0  Failed: 1']

    # exec

    def exec_command(self, namespace, pod_name, command, stdin=None, check=True):
        self.calls.append(('exec', command))
        sql = command[command.index('-e') + 1] if '-e' in command else ''
        if self.sql_handler is not None:
            out = self.sql_handler(sql)
        else:
            out = next((text for key, text in self.sql_responses.items() if key in sql), '')
        result = ExecResult(out.encode('utf-8'), '', self.exec_returncode)
        if check and result.returncode != 0:
            raise ExecError(command[-1], result.returncode, 'boom')
        return result

    def exec_stream_out(self, namespace, pod_name, command):
        self.calls.append(('exec_stream_out', command))
        yield from self.dump_chunks
        if self.dump_error is not None:
            raise self.dump_error

    def exec_stream_in(self, namespace, pod_name, command, chunks, check=True):
        self.calls.append(('exec_stream_in', command))
        for chunk in chunks:
            self.stdin.append(chunk)
        if self.stream_in_error is not None:
            raise self.stream_in_error
        return ExecResult(b'', '', 0)


@pytest.fixture
def kube():
    return FakeKube()
