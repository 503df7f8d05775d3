import pytest

from client_database import schema

VARIABLES = {
    'MYSQL_DATABASE': 'client_db',
    'DB_MAINT_USERNAME': 'maint',
    'DB_MAINT_PASSWORD': "pa'ss",
    'MYSQL_AUTH_PASSWORD': 'auth-pw',
}


def test_groups_are_ordered():
    assert schema.sql_files(schema.SCHEMA) == [
        '001_create_database.sql',
        '002_create_oauth2_clients_table.sql',
        '003_create_indexes.sql',
    ]
    assert schema.sql_files(schema.USERS) == [
        '001_create_maint_user-template.sql',
        '002_create_auth_service_user-template.sql',
    ]


def test_unknown_group():
    with pytest.raises(ValueError, match='Unknown SQL group'):
        schema.sql_files('migrations')


def test_render_leaves_bcrypt_hashes_alone():
    rendered = dict(schema.render_group(schema.FIXTURES, VARIABLES))
    sql = rendered['001_sample_clients.sql']
    assert '$2a$10$N9qo8uLOickgx2ZMRZoMyeIjZAgcfl7p92ldGxad68LJZdL17lhWy' in sql
    assert 'USE `client_db`;' in sql
    assert '${' not in sql


def test_render_escapes_values():
    rendered = dict(schema.render_group(schema.USERS, VARIABLES))
    sql = rendered['001_create_maint_user-template.sql']
    assert "IDENTIFIED BY 'pa\\'ss'" in sql


def test_render_fails_on_missing_values():
    variables = dict(VARIABLES, MYSQL_AUTH_PASSWORD='')
    with pytest.raises(ValueError, match='MYSQL_AUTH_PASSWORD'):
        schema.render_group(schema.USERS, variables)


def test_auth_user_cannot_delete():
    sql = schema.read_sql(schema.USERS, '002_create_auth_service_user-template.sql')
    grants = [line for line in sql.splitlines() if line.startswith('GRANT')]
    assert grants
    assert all('DELETE' not in line and 'ALL' not in line for line in grants)


def test_no_physical_deletes_in_shipped_sql():
    for group in schema.GROUPS:
        for filename in schema.sql_files(group):
            assert 'DELETE FROM' not in schema.read_sql(group, filename).upper()


def test_health_check_sql():
    sql = schema.health_check_sql(VARIABLES)
    assert 'FROM `client_db`.oauth2_clients' in sql


def test_placeholders():
    assert schema.placeholders('${B} ${A} $2a$10$x ${A}') == ['A', 'B']
