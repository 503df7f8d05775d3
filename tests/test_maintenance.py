import gzip
from datetime import datetime

import pytest

from client_database.backups import BackupNotFoundError, CorruptBackupError
from client_database.kube import ExecError, PodNotFoundError
from client_database.maintenance import Maintenance

STATS = 'Total Tables: 1\nDatabase Size: 0.05 MB\n'


@pytest.fixture
def maintenance(config, kube):
    kube.sql_responses = {'information_schema.tables': STATS}
    return Maintenance(config, kube, run_interactive=lambda argv: 0)


def _write_backup(maintenance, when, payload):
    maintenance.store.ensure()
    path = maintenance.store.new_path(when)
    with gzip.open(path, 'wb') as out:
        out.write(payload)
    return path


def test_backup_streams_dump_into_compressed_file(maintenance, kube, capsys):
    path = maintenance.backup(now=datetime(2025, 1, 8, 14, 30, 22))

    assert path.name == 'client_db_backup_2025-01-08_14-30-22.sql.gz'
    with gzip.open(path, 'rb') as src:
        assert src.read() == b''.join(kube.dump_chunks)
    out = capsys.readouterr().out
    assert 'Total Tables: 1' in out
    assert 'maint-pw' not in out


def test_backup_keeps_last_five(maintenance):
    for day in range(1, 8):
        _write_backup(maintenance, datetime(2025, 1, day), b'old')
    newest = maintenance.backup(now=datetime(2025, 2, 1))

    remaining = maintenance.store.list()
    assert len(remaining) == 5
    assert remaining[0] == newest


def test_failed_backup_leaves_no_file(maintenance, kube):
    kube.dump_error = ExecError('mysqldump', 2, 'Access denied')
    with pytest.raises(ExecError) as excinfo:
        maintenance.backup(now=datetime(2025, 1, 8))
    assert excinfo.value.returncode == 2
    assert maintenance.store.list() == []


def test_backup_without_pod(maintenance, kube):
    kube.running_pod = None
    with pytest.raises(PodNotFoundError):
        maintenance.backup()
    assert not any(c[0] == 'exec_stream_out' for c in kube.calls)


def test_backup_requires_credentials(maintenance, config):
    config.database.maint_password = ''
    with pytest.raises(ValueError, match='DB_MAINT_PASSWORD'):
        maintenance.backup()


def test_restore_feeds_latest_backup_byte_for_byte(maintenance, kube):
    _write_backup(maintenance, datetime(2025, 1, 1), b'older')
    payload = b'INSERT INTO oauth2_clients VALUES (1);\n' * 5000
    _write_backup(maintenance, datetime(2025, 1, 2), payload)
    questions = []

    assert maintenance.restore(None, lambda q: questions.append(q) or 'YES')

    assert b''.join(kube.stdin) == payload
    command = next(c[1] for c in kube.calls if c[0] == 'exec_stream_in')
    assert command[command.index('-c') + 1].startswith(f'head -c {len(payload)} | mysql')
    assert len(questions) == 1


@pytest.mark.parametrize('answer', ['', 'n', 'no', 'yess', 'maybe'])
def test_restore_cancelled_touches_nothing(maintenance, kube, answer):
    _write_backup(maintenance, datetime(2025, 1, 1), b'data')
    assert maintenance.restore(None, lambda q: answer) is False
    assert not any(c[0] in ('exec', 'exec_stream_in') for c in kube.calls)


def test_restore_named_backup(maintenance, kube):
    path = _write_backup(maintenance, datetime(2025, 1, 1), b'one')
    _write_backup(maintenance, datetime(2025, 1, 2), b'two')
    maintenance.restore(path.name, lambda q: 'y')
    assert b''.join(kube.stdin) == b'one'


def test_restore_missing_backup(maintenance):
    with pytest.raises(BackupNotFoundError):
        maintenance.restore('nope.sql.gz', lambda q: 'y')


def test_restore_damaged_backup_touches_nothing(maintenance, kube):
    maintenance.store.ensure()
    path = maintenance.store.new_path(datetime(2025, 1, 1))
    path.write_bytes(b'plain text, not gzip')
    with pytest.raises(CorruptBackupError):
        maintenance.restore(path.name, lambda q: 'y')
    assert not any(c[0] in ('exec', 'exec_stream_in') for c in kube.calls)


def test_restore_failure_propagates(maintenance, kube):
    _write_backup(maintenance, datetime(2025, 1, 1), b'data')
    kube.stream_in_error = ExecError('mysql', 1, 'ERROR 1064')
    with pytest.raises(ExecError):
        maintenance.restore(None, lambda q: 'y')


def test_export_schema(maintenance, kube, config):
    kube.dump_chunks = [b'CREATE TABLE oauth2_clients (...);\n']
    target = maintenance.export_schema()
    assert str(target) == config.backup.schema_export_path
    assert target.read_bytes() == b'CREATE TABLE oauth2_clients (...);\n'
    command = next(c[1] for c in kube.calls if c[0] == 'exec_stream_out')
    assert '--no-data' in command


def test_load_schema_runs_job_and_cleans_up(maintenance, kube):
    assert maintenance.load_schema()

    configmap = kube.applied('ConfigMap')[0]
    assert sorted(configmap['data']) == [
        '001_create_database.sql',
        '002_create_oauth2_clients_table.sql',
        '003_create_indexes.sql',
    ]
    secret = kube.applied('Secret')[0]
    assert "IDENTIFIED BY 'maint-pw'" in secret['stringData']['001_create_maint_user-template.sql']
    job = kube.applied('Job')[0]
    assert job['metadata']['name'] == 'client-database-load-schema'
    assert ('wait_for_job', 'client-database-load-schema', 60) in kube.calls
    assert kube.calls[-1] == ('delete', 'Job', 'client-database-load-schema')


def test_failed_job_is_kept_for_debugging(maintenance, kube, capsys):
    kube.job_outcome = 'Failed'
    assert maintenance.load_fixtures() is False
    deletes = [c for c in kube.calls if c[0] == 'delete' and c[1] == 'Job']
    # Only the removal of a previous run, before the job was applied
    assert len(deletes) == 1
    assert 'Failed: 1' in capsys.readouterr().out


def test_timed_out_job(maintenance, kube):
    kube.job_outcome = 'Timeout'
    assert maintenance.load_schema() is False


def test_health_reports_everything(maintenance, kube, capsys):
    def respond(sql):
        if 'information_schema.tables' in sql:
            return STATS
        if 'CURRENT_USER' in sql:
            return 'maint@%\tclient_db\n'
        if 'SHOW STATUS' in sql:
            return 'Uptime\t90061\nThreads_connected\t3\n'
        if 'oauth2_clients' in sql:
            return 'healthy\t2\t1\t1\t2025-01-08 14:30:22\n'
        return '1\n'

    kube.sql_handler = respond

    assert maintenance.health()

    out = capsys.readouterr().out
    assert 'MySQL connection successful' in out
    assert 'Uptime: 1d 1h 1m' in out
    assert 'Total: 2  Active: 1  Inactive: 1' in out
    assert 'PVC: mysql-data-client-database-mysql-0' in out
    assert 'line 2' in out


def test_health_without_namespace(maintenance, kube):
    kube.namespaces = set()
    assert maintenance.health() is False


def test_health_without_pod(maintenance, kube, capsys):
    kube.running_pod = None
    assert maintenance.health() is False
    assert 'No running MySQL pod found' in capsys.readouterr().out


def test_health_connection_failure(maintenance, kube):
    kube.exec_returncode = 1
    assert maintenance.health() is False


def test_connect_runs_kubectl_exec(config, kube):
    seen = []
    maintenance = Maintenance(config, kube, run_interactive=lambda argv: seen.append(argv) or 0)
    assert maintenance.connect() == 0
    argv = seen[0]
    assert argv[:4] == ['kubectl', 'exec', '-it', '-n']
    assert argv[argv.index('--') + 1:argv.index('--') + 3] == ['sh', '-c']
    assert '$DB_MAINT_PASSWORD' in argv[-1]
    assert argv[-1].endswith(' client_db')
    assert not any('maint-pw' in arg for arg in argv)


def test_logs(maintenance, kube, capsys):
    maintenance.logs(tail=20)
    assert ('pod_logs', 'client-database-mysql-0', 20) in kube.calls
    maintenance.logs(follow=True)
    assert ('follow_pod_logs', 'client-database-mysql-0', None) in kube.calls
    assert 'line 1' in capsys.readouterr().out


def test_clean_and_list_backups(maintenance, capsys):
    _write_backup(maintenance, datetime(2025, 1, 1), b'x')
    assert len(maintenance.list_backups()) == 1
    assert 'client_db_backup_2025-01-01_00-00-00.sql.gz' in capsys.readouterr().out
    assert maintenance.clean_backups(days=30) == []


def test_client_repository_runs_sql_as_maintenance_user(maintenance, kube):
    repo = maintenance.client_repository()
    assert repo.list() == []
    command = kube.calls[-1][1]
    assert command[:2] == ['env', 'MYSQL_PWD=maint-pw']
    assert 'oauth2_clients' in command[command.index('-e') + 1]
