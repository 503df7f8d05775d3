import shlex
from typing import Any, Dict, List, Optional, Tuple

from client_database.config import get_config
from client_database.mysql import BACKUP_DUMP_OPTIONS


class ManifestTemplates:
    """
    Templates for the Kubernetes manifests of the client database
    """

    @staticmethod
    def labels(component: Optional[str] = None) -> Dict[str, str]:
        config = get_config()
        return {
            'app': config.cluster.app_label,
            'component': component or config.cluster.component_label,
            'managed-by': config.name,
        }

    @staticmethod
    def namespace_manifest() -> Dict[str, Any]:
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'Namespace',
            'metadata': {
                'name': config.cluster.namespace,
                'labels': {'app': config.cluster.app_label},
            },
        }

    @staticmethod
    def configmap_manifest() -> Dict[str, Any]:
        """
        Non-secret settings shared by the database and the jobs
        """
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'ConfigMap',
            'metadata': {
                'name': config.cluster.configmap_name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels(),
            },
            'data': {
                'MYSQL_DATABASE': config.database.name,
                'MYSQL_PORT': str(config.database.port),
                'MYSQL_HOST': config.cluster.service_dns,
            },
        }

    @staticmethod
    def secret_manifest() -> Dict[str, Any]:
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'type': 'Opaque',
            'metadata': {
                'name': config.cluster.secret_name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels(),
            },
            'stringData': {
                'MYSQL_ROOT_PASSWORD': config.database.root_password,
                'DB_MAINT_USERNAME': config.database.maint_username,
                'DB_MAINT_PASSWORD': config.database.maint_password,
                'MYSQL_AUTH_PASSWORD': config.database.auth_password,
            },
        }

    @staticmethod
    def service_manifest() -> Dict[str, Any]:
        """
        Headless service giving the StatefulSet pod a stable DNS name
        """
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': {
                'name': config.cluster.service_name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels(),
            },
            'spec': {
                'clusterIP': 'None',
                'selector': {
                    'app': config.cluster.app_label,
                    'component': config.cluster.component_label,
                },
                'ports': [{
                    'name': 'mysql',
                    'port': config.database.port,
                    'targetPort': config.database.port,
                }],
            },
        }

    @staticmethod
    def statefulset_manifest() -> Dict[str, Any]:
        config = get_config()
        selector = {
            'app': config.cluster.app_label,
            'component': config.cluster.component_label,
        }
        readiness = 'MYSQL_PWD="$MYSQL_ROOT_PASSWORD" mysql -h 127.0.0.1 -uroot -e "SELECT 1"'

        return {
            'apiVersion': 'apps/v1',
            'kind': 'StatefulSet',
            'metadata': {
                'name': config.cluster.statefulset_name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels(),
            },
            'spec': {
                'serviceName': config.cluster.service_name,
                'replicas': 1,
                'selector': {'matchLabels': selector},
                'template': {
                    'metadata': {'labels': ManifestTemplates.labels()},
                    'spec': {
                        'containers': [{
                            'name': 'mysql',
                            'image': config.database.image,
                            'imagePullPolicy': 'IfNotPresent',
                            'ports': [{
                                'name': 'mysql',
                                'containerPort': config.database.port,
                            }],
                            'env': [
                                ManifestTemplates._secret_env(
                                    'MYSQL_ROOT_PASSWORD', config.cluster.secret_name
                                ),
                                ManifestTemplates._secret_env(
                                    'DB_MAINT_USERNAME', config.cluster.secret_name
                                ),
                                ManifestTemplates._secret_env(
                                    'DB_MAINT_PASSWORD', config.cluster.secret_name
                                ),
                                {
                                    'name': 'MYSQL_DATABASE',
                                    'valueFrom': {
                                        'configMapKeyRef': {
                                            'name': config.cluster.configmap_name,
                                            'key': 'MYSQL_DATABASE',
                                        }
                                    },
                                },
                            ],
                            'volumeMounts': [{
                                'name': 'mysql-data',
                                'mountPath': '/var/lib/mysql',
                            }],
                            'livenessProbe': {
                                'exec': {'command': ['mysqladmin', 'ping', '-h', 'localhost', '--silent']},
                                'initialDelaySeconds': 30,
                                'periodSeconds': 10,
                            },
                            'readinessProbe': {
                                'exec': {'command': ['sh', '-c', readiness]},
                                'initialDelaySeconds': 10,
                                'periodSeconds': 5,
                            },
                            'resources': {
                                'requests': {'memory': '512Mi', 'cpu': '250m'},
                                'limits': {'memory': '1Gi', 'cpu': '1'},
                            },
                        }],
                    },
                },
                'volumeClaimTemplates': [{
                    'metadata': {
                        'name': 'mysql-data',
                        'labels': {'app': config.cluster.app_label},
                    },
                    'spec': {
                        'accessModes': ['ReadWriteOnce'],
                        'resources': {'requests': {'storage': config.database.storage_size}},
                    },
                }],
            },
        }

    @staticmethod
    def sql_configmap_manifest(name: str, files: List[Tuple[str, str]]) -> Dict[str, Any]:
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'ConfigMap',
            'metadata': {
                'name': name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels('jobs'),
            },
            'data': dict(files),
        }

    @staticmethod
    def sql_secret_manifest(name: str, files: List[Tuple[str, str]]) -> Dict[str, Any]:
        """
        Rendered SQL that embeds passwords (the user templates)
        """
        config = get_config()
        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'type': 'Opaque',
            'metadata': {
                'name': name,
                'namespace': config.cluster.namespace,
                'labels': ManifestTemplates.labels('jobs'),
            },
            'stringData': dict(files),
        }

    @staticmethod
    def sql_job_manifest(
        name: str,
        sources: List[Tuple[str, str]],
        user_key: str = 'DB_MAINT_USERNAME',
        password_key: str = 'DB_MAINT_PASSWORD'
    ) -> Dict[str, Any]:
        """
        Job running SQL files against the database

        Args:
            sources: (kind, name) pairs, kind being 'ConfigMap' or 'Secret';
                their files run in the given order, each source in file name order
            user_key: Secret key holding the user name; empty to connect as root
            password_key: Secret key holding the password
        """
        config = get_config()
        volumes = []
        mounts = []
        for index, (kind, source_name) in enumerate(sources):
            volume = f'sql-{index}'
            if kind == 'Secret':
                volumes.append({'name': volume, 'secret': {'secretName': source_name}})
            elif kind == 'ConfigMap':
                volumes.append({'name': volume, 'configMap': {'name': source_name}})
            else:
                raise ValueError(f"SQL source must be a ConfigMap or Secret, got {kind}")
            mounts.append({
                'name': volume,
                'mountPath': f'/sql/{index:02d}',
                'readOnly': True,
            })

        script = (
            'set -eu\n'
            'for f in /sql/*/*.sql; do\n'
            '  echo "Executing $f"\n'
            '  mysql -h"$MYSQL_HOST" -P"$MYSQL_PORT" -u"$DB_USER" < "$f"\n'
            'done\n'
            'echo "All SQL files executed"\n'
        )

        env = [
            ManifestTemplates._configmap_env('MYSQL_HOST', config.cluster.configmap_name),
            ManifestTemplates._configmap_env('MYSQL_PORT', config.cluster.configmap_name),
            ManifestTemplates._secret_env('MYSQL_PWD', config.cluster.secret_name, password_key),
        ]
        if user_key:
            env.insert(2, ManifestTemplates._secret_env('DB_USER', config.cluster.secret_name, user_key))
        else:
            env.insert(2, {'name': 'DB_USER', 'value': 'root'})

        labels = ManifestTemplates.labels('jobs')
        return {
            'apiVersion': 'batch/v1',
            'kind': 'Job',
            'metadata': {
                'name': name,
                'namespace': config.cluster.namespace,
                'labels': labels,
            },
            'spec': {
                'backoffLimit': 1,
                'activeDeadlineSeconds': config.backup.backup_timeout_seconds,
                'template': {
                    'metadata': {'labels': labels},
                    'spec': {
                        'restartPolicy': 'Never',
                        'containers': [{
                            'name': 'sql',
                            'image': config.database.image,
                            'imagePullPolicy': 'IfNotPresent',
                            'command': ['/bin/sh', '-c'],
                            'args': [script],
                            'env': env,
                            'volumeMounts': mounts,
                        }],
                        'volumes': volumes,
                    },
                },
            },
        }

    @staticmethod
    def backup_pvc_manifest(name: str, namespace: str, size: str,
                            storage_class: Optional[str] = None) -> Dict[str, Any]:
        spec = {
            'accessModes': ['ReadWriteOnce'],
            'resources': {'requests': {'storage': size}},
        }
        if storage_class:
            spec['storageClassName'] = storage_class
        return {
            'apiVersion': 'v1',
            'kind': 'PersistentVolumeClaim',
            'metadata': {
                'name': name,
                'namespace': namespace,
                'labels': {
                    'app': 'client-database-backup',
                    'backup-name': name,
                },
            },
            'spec': spec,
        }

    @staticmethod
    def get_backup_command(host: str, database: str, keep_last: int) -> str:
        """
        Dump, compress into a timestamped file, keep the newest `keep_last`

        The dump is written under a temporary name and renamed once complete,
        so a failed run never leaves a truncated backup behind.
        """
        config = get_config()
        prefix = config.backup.file_prefix
        suffix = config.backup.file_suffix
        dump = ' '.join(
            ['mysqldump', '-h', shlex.quote(host), '-u"$DB_USER"']
            + BACKUP_DUMP_OPTIONS
            + [shlex.quote(database)]
        )
        return (
            'set -euo pipefail\n'
            f'target="/backup/{prefix}$(date +{config.backup.timestamp_format}){suffix}"\n'
            f'{dump} | gzip > /backup/.in-progress\n'
            'mv /backup/.in-progress "$target"\n'
            'echo "Backup written to $target"\n'
            f'ls -1 /backup/{prefix}*{suffix} | sort -r | tail -n +{keep_last + 1} | xargs -r rm -f\n'
        )

    @staticmethod
    def cronjob_manifest(
        name: str,
        namespace: str,
        schedule: str,
        keep_last: int,
        pvc_name: str,
        credentials_secret: str,
        host: str
    ) -> Dict[str, Any]:
        """
        Generate CronJob manifest for scheduled database backups
        """
        config = get_config()
        backup_cmd = ManifestTemplates.get_backup_command(
            host=host,
            database=config.database.name,
            keep_last=keep_last
        )

        return {
            'apiVersion': 'batch/v1',
            'kind': 'CronJob',
            'metadata': {
                'name': f'{name}-backup',
                'namespace': namespace,
                'labels': {
                    'app': 'client-database-backup',
                    'backup-name': name,
                    'managed-by': config.name,
                    'version': config.version
                }
            },
            'spec': {
                'schedule': schedule,
                'successfulJobsHistoryLimit': config.backup.successful_jobs_history_limit,
                'failedJobsHistoryLimit': config.backup.failed_jobs_history_limit,
                'concurrencyPolicy': 'Forbid',
                'jobTemplate': {
                    'spec': {
                        'backoffLimit': 2,
                        'activeDeadlineSeconds': config.backup.backup_timeout_seconds,
                        'template': {
                            'metadata': {
                                'labels': {
                                    'app': 'client-database-backup',
                                    'backup-name': name
                                }
                            },
                            'spec': {
                                'restartPolicy': 'OnFailure',
                                'containers': [{
                                    'name': 'backup',
                                    'image': config.database.image,
                                    'imagePullPolicy': 'IfNotPresent',
                                    'command': ['/bin/bash', '-c'],
                                    'args': [backup_cmd],
                                    'env': [
                                        ManifestTemplates._secret_env(
                                            'DB_USER', credentials_secret, 'DB_MAINT_USERNAME'
                                        ),
                                        ManifestTemplates._secret_env(
                                            'MYSQL_PWD', credentials_secret, 'DB_MAINT_PASSWORD'
                                        ),
                                    ],
                                    'volumeMounts': [{
                                        'name': 'backup-storage',
                                        'mountPath': '/backup'
                                    }],
                                    'resources': {
                                        'requests': {
                                            'memory': config.backup.memory_request,
                                            'cpu': config.backup.cpu_request
                                        },
                                        'limits': {
                                            'memory': config.backup.memory_limit,
                                            'cpu': config.backup.cpu_limit
                                        }
                                    }
                                }],
                                'volumes': [{
                                    'name': 'backup-storage',
                                    'persistentVolumeClaim': {
                                        'claimName': pvc_name
                                    }
                                }]
                            }
                        }
                    }
                }
            }
        }

    @staticmethod
    def _secret_env(name: str, secret: str, key: Optional[str] = None) -> Dict[str, Any]:
        return {
            'name': name,
            'valueFrom': {
                'secretKeyRef': {
                    'name': secret,
                    'key': key or name
                }
            }
        }

    @staticmethod
    def _configmap_env(name: str, configmap: str, key: Optional[str] = None) -> Dict[str, Any]:
        return {
            'name': name,
            'valueFrom': {
                'configMapKeyRef': {
                    'name': configmap,
                    'key': key or name
                }
            }
        }
