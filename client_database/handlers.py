import logging
import re
from typing import Any, Dict

import kopf
import kubernetes

from client_database.config import get_config
from client_database.templates import ManifestTemplates

GROUP = 'clientdb.example.com'
VERSION = 'v1'
PLURAL = 'clientdatabasebackups'

_CRON_FIELD = re.compile(r'^[\d*/,\-A-Za-z]+$')
_QUANTITY = re.compile(r'^\d+(\.\d+)?(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$')


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, logger, **_):
    """
    Configure operator on startup
    """
    config = get_config()

    settings.persistence.finalizer = f'{config.name}/finalizer'
    settings.posting.level = getattr(logging, config.log_level.upper(), logging.INFO)

    logger.info(f"Starting {config.name} v{config.version}")
    logger.info(f"Default schedule: {config.backup.default_schedule}")
    logger.info(f"Backing up database {config.database.name} at {config.cluster.service_dns}")


def _backup_settings(spec: Dict[str, Any], name: str) -> Dict[str, Any]:
    config = get_config()
    storage = spec.get('storage') or {}
    database = spec.get('database') or {}
    return {
        'schedule': spec.get('schedule', config.backup.default_schedule),
        'keep_last': (spec.get('retention') or {}).get('keepLast', config.backup.keep_last),
        'size': storage.get('size', config.backup.default_storage_size),
        'storage_class': storage.get('storageClassName'),
        'pvc_name': storage.get('claimName', f'{name}-backup-storage'),
        'host': database.get('host', config.cluster.service_dns),
        'credentials_secret': database.get('credentialsSecret', config.cluster.secret_name),
    }


def _ensure_backup_volume(settings: Dict[str, Any], namespace: str, logger) -> None:
    """Create the backup PVC unless it exists; it outlives the resource"""
    api = kubernetes.client.CoreV1Api()
    try:
        api.read_namespaced_persistent_volume_claim(
            name=settings['pvc_name'],
            namespace=namespace
        )
        return
    except kubernetes.client.exceptions.ApiException as e:
        if e.status != 404:
            raise

    pvc = ManifestTemplates.backup_pvc_manifest(
        name=settings['pvc_name'],
        namespace=namespace,
        size=settings['size'],
        storage_class=settings['storage_class']
    )
    api.create_namespaced_persistent_volume_claim(namespace=namespace, body=pvc)
    logger.info(f"PersistentVolumeClaim {settings['pvc_name']} created ({settings['size']})")


def _build_cronjob(settings: Dict[str, Any], name: str, namespace: str) -> Dict[str, Any]:
    cronjob = ManifestTemplates.cronjob_manifest(
        name=name,
        namespace=namespace,
        schedule=settings['schedule'],
        keep_last=settings['keep_last'],
        pvc_name=settings['pvc_name'],
        credentials_secret=settings['credentials_secret'],
        host=settings['host']
    )
    kopf.adopt(cronjob)  # Set owner reference for garbage collection
    return cronjob


@kopf.on.create(GROUP, VERSION, PLURAL)
def create_backup_job(spec, name, namespace, logger, **kwargs):
    """
    Handler called when a ClientDatabaseBackup resource is created
    """
    logger.info(f"Creating backup job for {name}")

    settings = _backup_settings(spec, name)
    _validate_spec(settings, logger)

    api = kubernetes.client.BatchV1Api()
    try:
        _ensure_backup_volume(settings, namespace, logger)
        api.create_namespaced_cron_job(
            namespace=namespace,
            body=_build_cronjob(settings, name, namespace)
        )
    except kubernetes.client.exceptions.ApiException as e:
        logger.error(f"Failed to create CronJob: {e}")
        raise kopf.PermanentError(f"Cannot create CronJob: {e}")

    logger.info(f"CronJob {name}-backup created successfully with schedule: {settings['schedule']}")
    return {
        'message': f"Backup CronJob created with schedule: {settings['schedule']}",
        'cronjob': f'{name}-backup',
        'keepLast': settings['keep_last'],
        'volume': settings['pvc_name'],
    }


@kopf.on.update(GROUP, VERSION, PLURAL)
def update_backup_job(spec, name, namespace, logger, **kwargs):
    """
    Handler called when a ClientDatabaseBackup resource is updated
    """
    logger.info(f"Updating backup job for {name}")

    settings = _backup_settings(spec, name)
    _validate_spec(settings, logger)

    api = kubernetes.client.BatchV1Api()
    try:
        try:
            api.delete_namespaced_cron_job(
                name=f'{name}-backup',
                namespace=namespace,
                propagation_policy='Background'
            )
            logger.info(f"Deleted old CronJob {name}-backup")
        except kubernetes.client.exceptions.ApiException as e:
            if e.status != 404:
                raise

        _ensure_backup_volume(settings, namespace, logger)
        api.create_namespaced_cron_job(
            namespace=namespace,
            body=_build_cronjob(settings, name, namespace)
        )
    except kubernetes.client.exceptions.ApiException as e:
        logger.error(f"Failed to update CronJob: {e}")
        raise kopf.TemporaryError(f"Cannot update CronJob: {e}", delay=30)

    logger.info(f"CronJob {name}-backup updated successfully")
    return {'message': 'Backup job updated successfully'}


@kopf.on.delete(GROUP, VERSION, PLURAL)
def delete_backup_job(name, namespace, logger, **kwargs):
    """
    Handler called when a ClientDatabaseBackup resource is deleted
    The CronJob goes with its owner reference; the backup volume is kept
    """
    logger.info(f"ClientDatabaseBackup {name} deleted - associated CronJob will be cleaned up automatically")
    return {'message': f'Backup job {name} deleted'}


@kopf.timer(GROUP, VERSION, PLURAL, interval=300)
def check_backup_status(spec, name, namespace, status, patch, logger, **kwargs):
    """
    Periodic check to update backup status
    """
    api = kubernetes.client.BatchV1Api()

    try:
        cronjob = api.read_namespaced_cron_job(
            name=f'{name}-backup',
            namespace=namespace
        )
    except kubernetes.client.exceptions.ApiException as e:
        logger.warning(f"Could not read CronJob status: {e}")
        patch.status['phase'] = 'Error'
        patch.status['error'] = str(e)
        return

    if cronjob.status.last_schedule_time:
        patch.status['lastBackup'] = cronjob.status.last_schedule_time.isoformat()
        patch.status['phase'] = 'Active'
    else:
        patch.status['phase'] = 'Pending'

    patch.status['activeJobs'] = len(cronjob.status.active or [])
    patch.status['error'] = None


def _validate_spec(settings: Dict[str, Any], logger) -> None:
    """
    Validate ClientDatabaseBackup settings
    """
    fields = str(settings['schedule']).split()
    if len(fields) != 5 or not all(_CRON_FIELD.match(f) for f in fields):
        raise kopf.PermanentError(
            f"Invalid schedule: {settings['schedule']!r}. Expected five cron fields"
        )

    keep_last = settings['keep_last']
    if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 1:
        raise kopf.PermanentError("retention.keepLast must be an integer of at least 1")

    if not _QUANTITY.match(str(settings['size'])):
        raise kopf.PermanentError(f"Invalid storage size: {settings['size']!r}")

    if not settings['host']:
        raise kopf.PermanentError("Database host is required")

    logger.info("Spec validation passed")
