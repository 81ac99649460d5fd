"""Storage module - persistence backends and document storage."""

from .interface import StorageInterface
from .local_storage import LocalStorage
from .backend import PersistenceBackend, StorageStats
from .flat_file_backend import FlatFileBackend
from .sql_backend import SqlBackend
from .factory import create_backend, open_backend

__all__ = [
    'StorageInterface', 'LocalStorage',
    'PersistenceBackend', 'StorageStats',
    'FlatFileBackend', 'SqlBackend',
    'create_backend', 'open_backend',
]
