"""
OAuth2 client credential database tooling for Kubernetes

Deploys the MySQL StatefulSet holding the oauth2_clients table, backs it
up and restores it through the pod, administers client credentials, and
runs an operator that schedules in-cluster backups from
ClientDatabaseBackup custom resources.
"""

__version__ = "0.1.0"

# Import main components for easier access
from client_database.config import OperatorConfig, get_config
from client_database.backups import BackupStore
from client_database.clients import ClientRepository, OAuth2Client
from client_database.deployment import Deployment
from client_database.maintenance import Maintenance
from client_database.templates import ManifestTemplates

__all__ = [
    'BackupStore',
    'ClientRepository',
    'Deployment',
    'Maintenance',
    'ManifestTemplates',
    'OAuth2Client',
    'OperatorConfig',
    'get_config',
]
