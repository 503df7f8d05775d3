from types import SimpleNamespace

import pytest
from kubernetes.client.exceptions import ApiException

from client_database import kube as kube_module
from client_database.kube import ExecError, KubeClient, PodNotFoundError, WaitTimeout, _command_name


class FakeResp:
    """Mimics the websocket client returned by kubernetes.stream.stream"""

    def __init__(self, stdout=(), stderr=b'', returncode=0, exit_status=True):
        self._pending = list(stdout)
        self._buffer = b''
        self._stderr = stderr
        self.returncode = returncode
        self._exit_status = exit_status
        self.written = []
        self.closed = False
        self._finished = False

    def is_open(self):
        return not self._finished

    def update(self, timeout=0):
        if self._pending:
            self._buffer += self._pending.pop(0)
        else:
            self._finished = True

    def peek_stdout(self):
        return self._buffer

    def read_stdout(self):
        data, self._buffer = self._buffer, b''
        return data

    def peek_stderr(self):
        return self._stderr

    def read_stderr(self):
        data, self._stderr = self._stderr, b''
        return data

    def peek_channel(self, channel):
        return 'status' if self._exit_status else ''

    def write_stdin(self, data):
        self.written.append(data)

    def close(self):
        self.closed = True


class Api:
    """Records calls to any method name"""

    def __init__(self, **behaviour):
        self.calls = []
        self.behaviour = behaviour

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            result = self.behaviour.get(name)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(*args, **kwargs)
            return result
        return method


def _client(core=None, apps=None, batch=None, **kwargs):
    return KubeClient(core=core or Api(), apps=apps or Api(), batch=batch or Api(), **kwargs)


@pytest.fixture
def resp(monkeypatch):
    holder = {}

    def fake_stream(func, pod, namespace, **kwargs):
        holder['kwargs'] = kwargs
        return holder['resp']

    monkeypatch.setattr(kube_module, 'stream', fake_stream)
    return holder


def test_command_name_never_reveals_password():
    assert _command_name(['env', 'MYSQL_PWD=hunter2', 'mysqldump', '-umaint']) == 'mysqldump'
    assert _command_name(['env', 'MYSQL_PWD=hunter2', 'sh', '-c', 'head -c 10 | mysql -u x']) == 'mysql'
    assert _command_name([]) == 'command'


def test_apply_creates_then_patches():
    core = Api(create_namespaced_config_map=ApiException(status=409, reason='Conflict'))
    client = _client(core=core)
    manifest = {'kind': 'ConfigMap', 'metadata': {'name': 'cfg', 'namespace': 'ns'}}

    assert client.apply(manifest) == 'configured'
    assert [c[0] for c in core.calls] == ['create_namespaced_config_map', 'patch_namespaced_config_map']

    assert _client().apply({'kind': 'Namespace', 'metadata': {'name': 'ns'}}) == 'created'


def test_apply_propagates_other_errors():
    core = Api(create_namespaced_secret=ApiException(status=403, reason='Forbidden'))
    with pytest.raises(ApiException):
        _client(core=core).apply({'kind': 'Secret', 'metadata': {'name': 's', 'namespace': 'ns'}})


def test_apply_unknown_kind():
    with pytest.raises(ValueError):
        _client().apply({'kind': 'Ingress', 'metadata': {'name': 'x', 'namespace': 'ns'}})


def test_delete_missing_resource():
    batch = Api(delete_namespaced_job=ApiException(status=404, reason='Not Found'))
    assert _client(batch=batch).delete('Job', 'load', 'ns') is False
    assert _client().delete('Job', 'load', 'ns') is True


def test_find_running_pod():
    pods = SimpleNamespace(items=[SimpleNamespace(metadata=SimpleNamespace(name='mysql-0'))])
    core = Api(list_namespaced_pod=pods)
    assert _client(core=core).find_running_pod('ns', 'app=x') == 'mysql-0'
    assert core.calls[0][2]['field_selector'] == 'status.phase=Running'

    empty = Api(list_namespaced_pod=SimpleNamespace(items=[]))
    with pytest.raises(PodNotFoundError, match='app=x'):
        _client(core=empty).find_running_pod('ns', 'app=x')


def test_wait_for_job_outcomes():
    def job(condition):
        return SimpleNamespace(status=SimpleNamespace(conditions=[condition]))

    failed = SimpleNamespace(type='Failed', status='True')
    batch = Api(read_namespaced_job_status=lambda **kw: job(failed))
    assert _client(batch=batch).wait_for_job('load', 'ns', 60) == 'Failed'


def test_wait_times_out_with_fake_clock():
    now = [0.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    pending = SimpleNamespace(status=SimpleNamespace(conditions=None))
    batch = Api(read_namespaced_job_status=lambda **kw: pending)
    client = _client(batch=batch, poll_interval=2.0, sleep=sleep, clock=lambda: now[0])
    with pytest.raises(WaitTimeout, match='job/load'):
        client.wait_for_job('load', 'ns', 10)
    assert sum(sleeps) == 10


def test_pod_ready_treats_missing_pod_as_not_ready():
    core = Api(read_namespaced_pod=ApiException(status=404, reason='Not Found'))
    client = _client(core=core, sleep=lambda s: None, clock=iter([0, 0, 100]).__next__)
    with pytest.raises(WaitTimeout):
        client.wait_for_pod_ready('mysql-0', 'ns', 5)


def test_exec_stream_out_yields_chunks(resp):
    resp['resp'] = FakeResp(stdout=[b'one', b'two'])
    chunks = list(_client().exec_stream_out('ns', 'pod', ['mysqldump', 'db']))
    assert b''.join(chunks) == b'onetwo'
    assert resp['kwargs']['binary'] is True
    assert resp['kwargs']['stdin'] is False
    assert resp['resp'].closed


def test_exec_stream_out_raises_after_output(resp):
    resp['resp'] = FakeResp(stdout=[b'partial'], stderr=b'Access denied', returncode=2)
    received = []
    with pytest.raises(ExecError) as excinfo:
        for chunk in _client().exec_stream_out('ns', 'pod', ['env', 'MYSQL_PWD=pw', 'mysqldump']):
            received.append(chunk)
    assert received == [b'partial']
    assert excinfo.value.returncode == 2
    assert 'Access denied' in str(excinfo.value)
    assert 'pw' not in excinfo.value.command


def test_exec_without_exit_status_fails(resp):
    resp['resp'] = FakeResp(stdout=[b'x'], exit_status=False)
    with pytest.raises(ExecError) as excinfo:
        _client().exec_command('ns', 'pod', ['mysql'])
    assert excinfo.value.returncode == -1


def test_exec_stream_in_writes_every_chunk(resp):
    resp['resp'] = FakeResp(stdout=[b'done'])
    result = _client().exec_stream_in('ns', 'pod', ['sh', '-c', 'head -c 6 | mysql'], iter([b'abc', b'def']))
    assert resp['resp'].written == [b'abc', b'def']
    assert result.text == 'done'
    assert resp['kwargs']['stdin'] is True


def test_exec_command_check(resp):
    resp['resp'] = FakeResp(stdout=[b'1\n'], returncode=1, stderr=b'ERROR 1045')
    result = _client().exec_command('ns', 'pod', ['mysql', '-e', 'SELECT 1'], check=False)
    assert result.returncode == 1
    assert result.stderr == 'ERROR 1045'

    resp['resp'] = FakeResp(stdout=[b'1\n'], returncode=1)
    with pytest.raises(ExecError):
        _client().exec_command('ns', 'pod', ['mysql', '-e', 'SELECT 1'])
