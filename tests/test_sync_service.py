"""
Tests del orquestador de sincronización.
"""
import pytest

from conftest import COMPANY_ID, FakeRemote, FakeTally, tally_rows
from tally_sync_connector.checkpoint_service import CheckpointService
from tally_sync_connector.models import AlterCounters, CycleStatus, Partition, SyncMode
from tally_sync_connector.query_compiler import QueryCompiler
from tally_sync_connector.remote_client import RemoteStoreError, ReplicationError
from tally_sync_connector.sync_service import SyncService, alter_id_filter
from tally_sync_connector.tally_client import TransportError

RESPONSES = {
    "Group": tally_rows(("grp-1", "Assets", "81")),
    "Ledger": tally_rows(("led-1", "Cash", "90"), ("led-2", "Bank", "100")),
    "Voucher": tally_rows(("vch-1", "1", "51")),
    "Voucher.AllLedgerEntries": tally_rows(("vch-1-Cash", "Cash", "51")),
}


@pytest.fixture
def checkpoint_service(checkpoint_dir):
    return CheckpointService(checkpoint_dir)


def make_service(catalog, checkpoint_service, tally=None, remote=None):
    return SyncService(
        tally_client=tally or FakeTally(responses=RESPONSES),
        remote_client=remote or FakeRemote(),
        catalog=catalog,
        checkpoint_service=checkpoint_service,
        compiler=QueryCompiler()
    )


def pushed_tables(remote):
    return [table for table, _, _ in remote.pushed]


def table_requests(tally):
    return [xml for xml in tally.requests if "AltMstId" not in xml]


def test_alter_id_filter():
    assert alter_id_filter(80) == "$AlterID > 80"


class TestIncrementalCycle:

    def test_only_changed_partition_is_synced(self, catalog, checkpoint_service):
        checkpoint_service.save(AlterCounters(master=80, transaction=50))
        tally = FakeTally(counters=(100, 50), responses=RESPONSES)
        remote = FakeRemote(remote=(80, 50))
        service = make_service(catalog, checkpoint_service, tally, remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.mode == SyncMode.INCREMENTAL
        assert pushed_tables(remote) == ["groups", "ledgers"]
        assert all(mode == SyncMode.INCREMENTAL for _, _, mode in remote.pushed)
        assert all("$AlterID > 80" in xml for xml in table_requests(tally))
        assert remote.persisted == [AlterCounters(master=100, transaction=50)]
        assert cycle.counters_before == AlterCounters(master=80, transaction=50)
        assert cycle.counters_after == AlterCounters(master=100, transaction=50)
        assert cycle.partitions_advanced == [Partition.MASTER]
        assert checkpoint_service.load().counters == AlterCounters(master=100, transaction=50)

    def test_records_carry_provenance(self, catalog, checkpoint_service):
        remote = FakeRemote(remote=(80, 50))
        make_service(catalog, checkpoint_service, FakeTally(counters=(100, 50), responses=RESPONSES), remote).run_cycle()

        _, ledger_records, _ = remote.pushed[1]
        assert [r["guid"] for r in ledger_records] == ["led-1", "led-2"]
        assert ledger_records[0]["company_id"] == COMPANY_ID
        assert ledger_records[0]["source"] == "tally-sync"
        assert ledger_records[0]["alterid"] == 90

    def test_no_changes_is_idle(self, catalog, checkpoint_service):
        remote = FakeRemote(remote=(80, 50))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(80, 50), responses=RESPONSES), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.IDLE
        assert remote.pushed == []
        assert remote.persisted == []
        assert cycle.counters_after == AlterCounters(master=80, transaction=50)

    def test_counters_never_decrease(self, catalog, checkpoint_service):
        # El checkpoint local va adelantado respecto al destino y a Tally
        checkpoint_service.save(AlterCounters(master=120, transaction=50))
        remote = FakeRemote(remote=(80, 50))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 60), responses=RESPONSES), remote)

        cycle = service.run_cycle()

        assert pushed_tables(remote) == ["vouchers", "accounting_entries"]
        assert remote.persisted == [AlterCounters(master=120, transaction=60)]
        assert cycle.counters_after.master == 120


class TestFullCycle:

    def test_cold_destination_syncs_everything_parent_first(self, catalog, checkpoint_service):
        tally = FakeTally(counters=(100, 60), responses=RESPONSES)
        remote = FakeRemote(remote=(80, 50), total_records=5)

        cycle = make_service(catalog, checkpoint_service, tally, remote).run_cycle()

        assert cycle.mode == SyncMode.FULL
        assert cycle.decision.cold_start
        assert pushed_tables(remote) == ["groups", "ledgers", "vouchers", "accounting_entries"]
        assert all(mode == SyncMode.FULL for _, _, mode in remote.pushed)
        assert not any("$AlterID" in xml for xml in table_requests(tally))
        assert remote.persisted == [AlterCounters(master=100, transaction=60)]

    def test_metadata_timeout_runs_full_extraction(self, catalog, checkpoint_service):
        remote = FakeRemote(metadata_error=RemoteStoreError("Timeout de 10s en GET"))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 60), responses=RESPONSES), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.mode == SyncMode.FULL
        assert len(remote.pushed) == 4

    def test_force_full(self, catalog, checkpoint_service):
        remote = FakeRemote(remote=(100, 60))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 60), responses=RESPONSES), remote)

        cycle = service.run_cycle(force_full=True)

        assert cycle.mode == SyncMode.FULL
        assert len(remote.pushed) == 4
        assert cycle.status == CycleStatus.COMPLETED

    def test_reset_request_forces_one_full_cycle(self, catalog, checkpoint_service):
        checkpoint_service.reset()
        remote = FakeRemote(remote=(100, 60))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 60), responses=RESPONSES), remote)

        first = service.run_cycle()
        second = service.run_cycle()

        assert first.mode == SyncMode.FULL
        assert second.status == CycleStatus.IDLE
        assert not checkpoint_service.full_sync_requested()


class TestFailures:

    def test_failed_table_does_not_advance_its_partition(self, catalog, checkpoint_service):
        remote = FakeRemote(remote=(80, 50))
        remote.failing_tables = {"ledgers"}
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 60), responses=RESPONSES), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.PARTIAL
        assert cycle.failed_tables == ["mst_ledger"]
        # Las demás tablas siguen sincronizándose
        assert pushed_tables(remote) == ["groups", "ledgers", "vouchers", "accounting_entries"]
        assert remote.persisted == [AlterCounters(master=80, transaction=60)]
        assert cycle.partitions_advanced == [Partition.TRANSACTION]

    def test_extraction_error_is_contained(self, catalog, checkpoint_service):
        responses = {**RESPONSES, "Voucher": TransportError("Timeout de 60s")}
        remote = FakeRemote(remote=(80, 50))
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(80, 60), responses=responses), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.PARTIAL
        failed = [t for t in cycle.tables if not t.success]
        assert [t.table for t in failed] == ["trn_voucher"]
        assert "Timeout" in failed[0].error
        assert remote.persisted == []
        assert cycle.counters_after == AlterCounters(master=80, transaction=50)

    def test_counter_persist_failure_keeps_baseline(self, catalog, checkpoint_service, monkeypatch):
        remote = FakeRemote(remote=(80, 50))

        def failing_persist(counters, sync_mode):
            raise ReplicationError("Error de servidor 503", retryable=True)

        monkeypatch.setattr(remote, "persist_counters", failing_persist)
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(100, 50), responses=RESPONSES), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.PARTIAL
        assert cycle.counters_after == AlterCounters(master=80, transaction=50)
        assert cycle.partitions_advanced == []
        assert checkpoint_service.load() is None

    def test_tally_unreachable_aborts(self, catalog, checkpoint_service):
        remote = FakeRemote()
        service = make_service(catalog, checkpoint_service, FakeTally(connected=False), remote)

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.ABORTED
        assert "Tally" in cycle.error
        assert remote.pushed == []
        assert not service.is_running

    def test_remote_unreachable_aborts(self, catalog, checkpoint_service):
        service = make_service(catalog, checkpoint_service, remote=FakeRemote(healthy=False))

        cycle = service.run_cycle()

        assert cycle.status == CycleStatus.ABORTED

    def test_alter_id_read_failure_aborts(self, catalog, checkpoint_service):
        tally = FakeTally(counters=TransportError("refused"), responses=RESPONSES)

        cycle = make_service(catalog, checkpoint_service, tally).run_cycle()

        assert cycle.status == CycleStatus.ABORTED
        assert cycle.tables == []


class TestSingleFlight:

    def test_overlapping_trigger_is_dropped(self, catalog, checkpoint_service):
        remote = FakeRemote()
        service = make_service(catalog, checkpoint_service, remote=remote)
        service._lock.acquire()
        try:
            assert service.is_running
            assert service.run_cycle() is None
        finally:
            service._lock.release()

        assert remote.pushed == []
        assert service.cycle_count == 0

    def test_cycle_numbers_and_status(self, catalog, checkpoint_service):
        service = make_service(catalog, checkpoint_service)

        service.run_cycle()
        service.run_cycle()
        status = service.status()

        assert status["cycle_count"] == 2
        assert status["running"] is False
        assert status["last_cycle"]["cycle_number"] == 2
        assert status["checkpoint"]["exists"] is True
        # Primer ciclo: push de groups y ledgers + persistencia de AlterIDs
        assert status["remote_client"]["total_api_calls"] == 3


class TestDiagnostics:

    def test_preview(self, catalog, checkpoint_service):
        service = make_service(catalog, checkpoint_service, FakeTally(counters=(80, 60), responses=RESPONSES))

        preview = service.preview()

        assert preview["mode"] == "incremental"
        assert preview["tables"] == ["trn_voucher", "trn_accounting"]
        assert preview["checkpoint"] is None

    def test_extract_table(self, catalog, checkpoint_service):
        remote = FakeRemote()
        service = make_service(catalog, checkpoint_service, remote=remote)

        result = service.extract_table("mst_ledger", limit=1)

        assert result["total_records"] == 2
        assert result["target_table"] == "ledgers"
        assert result["sample"] == [{"guid": "led-1", "name": "Cash", "alterid": 90}]
        assert remote.pushed == []

    def test_extract_unknown_table(self, catalog, checkpoint_service):
        with pytest.raises(KeyError):
            make_service(catalog, checkpoint_service).extract_table("mst_missing")

    def test_test_connections(self, catalog, checkpoint_service):
        result = make_service(catalog, checkpoint_service, remote=FakeRemote(healthy=False)).test_connections()

        assert result["tally"]["status"] == "OK"
        assert result["remote_store"]["status"] == "ERROR"
        assert result["overall"] == "ERROR"
