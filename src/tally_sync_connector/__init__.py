"""
Conector Tally -> Remote Store.

Un conector unidireccional que extrae datos de Tally vía su servidor XML y
los replica de forma incremental (por AlterID) en un remote store HTTP/JSON.
"""
from .config import settings
from .query_compiler import QueryCompiler, ConfigurationError
from .tally_client import TallyClient, TransportError, TallyTimeoutError
from .extractor import TabularExtractor, ParseError
from .change_tracker import ChangeTracker, CounterReadError
from .remote_client import RemoteStoreClient, ReplicationError, RemoteStoreError
from .table_catalog import TableCatalog, load_table_catalog
from .checkpoint_service import CheckpointService
from .sync_service import SyncService
from .scheduler import SyncScheduler
from .models import (
    FieldType,
    FieldDescriptor,
    TableSpec,
    Partition,
    SyncMode,
    AlterCounters,
    ChangeDecision,
    ReplicationResult,
    TableSyncResult,
    SyncCycle,
)

__version__ = "1.0.0"
__all__ = [
    "settings",
    "QueryCompiler",
    "ConfigurationError",
    "TallyClient",
    "TransportError",
    "TallyTimeoutError",
    "TabularExtractor",
    "ParseError",
    "ChangeTracker",
    "CounterReadError",
    "RemoteStoreClient",
    "ReplicationError",
    "RemoteStoreError",
    "TableCatalog",
    "load_table_catalog",
    "CheckpointService",
    "SyncService",
    "SyncScheduler",
    "FieldType",
    "FieldDescriptor",
    "TableSpec",
    "Partition",
    "SyncMode",
    "AlterCounters",
    "ChangeDecision",
    "ReplicationResult",
    "TableSyncResult",
    "SyncCycle",
]
