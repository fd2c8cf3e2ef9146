"""
Configuración compartida de tests.

Las variables de entorno se fijan antes de importar el paquete porque
`config.settings` se instancia al importar.
"""
import os
import re
import tempfile
from typing import Optional

import pytest

COMPANY_ID = "11111111-1111-4111-8111-111111111111"
DIVISION_ID = "22222222-2222-4222-8222-222222222222"

os.environ.setdefault("REMOTE_API_BASE", "http://remote.test/api/v1")
os.environ.setdefault("COMPANY_ID", COMPANY_ID)
os.environ.setdefault("DIVISION_ID", DIVISION_ID)
os.environ.setdefault("CHECKPOINT_DIR", tempfile.mkdtemp(prefix="tally-sync-tests-"))
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("BATCH_RETRY_DELAY", "0")

from tally_sync_connector.models import (  # noqa: E402
    AlterCounters, FieldDescriptor, FieldType, Partition, ReplicationResult, TableSpec
)
from tally_sync_connector.table_catalog import TableCatalog  # noqa: E402

COLLECTION_TYPE = re.compile(r'<COLLECTION NAME="MyCollection"><TYPE>(\w+)</TYPE>')
ROUTE_PATTERN = re.compile(r'<REPEAT>MyLine\d\d : (\w+)</REPEAT>')


def tally_rows(*rows) -> str:
    """Arma una respuesta XML de Tally con una fila por tupla"""
    body = ""
    for row in rows:
        body += "".join(f"<F{i:02d}>{value}</F{i:02d}>" for i, value in enumerate(row, 1))
        body += "\r\n"
    return f"<ENVELOPE>{body}</ENVELOPE>"


def make_spec(name: str, partition: Partition, collection: str, parent: Optional[str] = None,
              priority: int = 999, target: Optional[str] = None) -> TableSpec:
    return TableSpec(
        name=name,
        partition=partition,
        collection=collection,
        target_table=target,
        sync_priority=priority,
        parent=parent,
        fields=[
            FieldDescriptor(name="guid", field="Guid", type=FieldType.TEXT),
            FieldDescriptor(name="name", field="Name", type=FieldType.TEXT),
            FieldDescriptor(name="alterid", field="AlterID", type=FieldType.NUMBER),
        ]
    )


class FakeTally:
    """Tally falso: responde según la ruta de colección de la petición"""

    def __init__(self, counters=(100, 50), responses: Optional[dict] = None, connected: bool = True):
        self.counters = counters
        self.responses = responses or {}
        self.connected = connected
        self.url = "http://tally.test:9000"
        self.requests = []

    def test_connection(self) -> bool:
        return self.connected

    def send(self, xml: str, timeout=None) -> str:
        self.requests.append(xml)
        if "AltMstId" in xml:
            if isinstance(self.counters, Exception):
                raise self.counters
            return f'"{self.counters[0]}","{self.counters[1]}"\r\n'
        route = ".".join([COLLECTION_TYPE.search(xml).group(1)] + ROUTE_PATTERN.findall(xml)[1:])
        response = self.responses.get(route, "")
        if isinstance(response, Exception):
            raise response
        return response


class FakeRemote:
    """Remote store falso con la misma interfaz que RemoteStoreClient"""

    def __init__(self, remote=(80, 50), total_records=1000, healthy=True, metadata_error=None):
        self.company_id = COMPANY_ID
        self.division_id = DIVISION_ID
        self.api_base = "http://remote.test/api/v1"
        self.counters = AlterCounters(master=remote[0], transaction=remote[1])
        self.total_records = total_records
        self.healthy = healthy
        self.metadata_error = metadata_error
        self.pushed = []
        self.persisted = []
        self.failing_tables = set()
        self.api_calls = 0

    def health(self) -> bool:
        return self.healthy

    def get_stats(self) -> dict:
        return {"total_records": self.total_records, "table_counts": {}}

    def get_metadata(self) -> dict:
        if self.metadata_error:
            raise self.metadata_error
        return {
            "last_alter_id_master": self.counters.master,
            "last_alter_id_transaction": self.counters.transaction,
            "tables": {}
        }

    def push(self, table, records, sync_mode=None, metadata=None) -> ReplicationResult:
        self.api_calls += 1
        self.pushed.append((table, list(records), sync_mode))
        if table in self.failing_tables:
            return ReplicationResult(
                table=table, total_records=len(records), total_batches=1,
                failed_batches=[1], errors=["batch 1: rechazado"]
            )
        return ReplicationResult(
            table=table, total_records=len(records), accepted=len(records),
            total_batches=1 if records else 0
        )

    def persist_counters(self, counters, sync_mode) -> None:
        self.api_calls += 1
        self.persisted.append(counters)
        self.counters = counters

    def get_client_stats(self) -> dict:
        return {"total_api_calls": self.api_calls, "total_retries": 0}


@pytest.fixture
def ledger_spec() -> TableSpec:
    return TableSpec(
        name="mst_ledger",
        partition=Partition.MASTER,
        collection="Ledger",
        target_table="ledgers",
        fields=[
            FieldDescriptor(name="guid", field="Guid", type=FieldType.TEXT),
            FieldDescriptor(name="name", field="Name", type=FieldType.TEXT),
            FieldDescriptor(name="is_revenue", field="IsRevenue", type=FieldType.LOGICAL),
            FieldDescriptor(name="opening_balance", field="OpeningBalance", type=FieldType.AMOUNT),
            FieldDescriptor(name="created_on", field="CreatedDate", type=FieldType.DATE),
        ],
        fetch=["Guid", "Name"],
        filters=["IsRevenue"]
    )


@pytest.fixture
def catalog() -> TableCatalog:
    return TableCatalog([
        make_spec("mst_group", Partition.MASTER, "Group", priority=1, target="groups"),
        make_spec("mst_ledger", Partition.MASTER, "Ledger", priority=2, target="ledgers"),
        make_spec("trn_accounting", Partition.TRANSACTION, "Voucher.AllLedgerEntries",
                  parent="trn_voucher", priority=1, target="accounting_entries"),
        make_spec("trn_voucher", Partition.TRANSACTION, "Voucher", priority=2, target="vouchers"),
    ])


@pytest.fixture
def checkpoint_dir(tmp_path):
    return tmp_path / "checkpoint"
