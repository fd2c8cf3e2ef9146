"""
Servicio de sincronización entre Tally y el remote store.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from .change_tracker import ChangeTracker
from .checkpoint_service import CheckpointService
from .config import settings
from .extractor import ParseError, TabularExtractor, add_provenance
from .models import (
    AlterCounters, ChangeDecision, CycleStatus, Partition, SyncCycle, SyncMode,
    TableSpec, TableSyncResult
)
from .query_compiler import ConfigurationError, QueryCompiler
from .remote_client import RemoteStoreClient, RemoteStoreError, ReplicationError
from .table_catalog import TableCatalog, load_table_catalog
from .tally_client import TallyClient, TransportError

logger = logging.getLogger(__name__)


def alter_id_filter(floor: int) -> str:
    """Filtro incremental: solo objetos modificados después del AlterID dado"""
    return f"$AlterID > {floor}"


class SyncService:
    """
    Servicio que orquesta la sincronización de Tally con el remote store.

    Cada ciclo:
    1. Verifica la conexión con Tally y con el remote store
    2. Decide el alcance (completo o incremental por partición)
    3. Extrae y replica tabla por tabla, aislando los errores por tabla
    4. Avanza los AlterIDs solo de las particiones que terminaron completas

    Solo un ciclo puede ejecutarse a la vez; un disparo concurrente se descarta.
    """

    def __init__(
        self,
        tally_client: Optional[TallyClient] = None,
        remote_client: Optional[RemoteStoreClient] = None,
        catalog: Optional[TableCatalog] = None,
        checkpoint_service: Optional[CheckpointService] = None,
        compiler: Optional[QueryCompiler] = None
    ):
        """Inicializa el servicio de sincronización"""
        self.compiler = compiler or QueryCompiler(
            company=settings.TALLY_COMPANY,
            from_date=settings.TALLY_FROM_DATE,
            to_date=settings.TALLY_TO_DATE
        )
        self.tally_client = tally_client or TallyClient()
        self.remote_client = remote_client or RemoteStoreClient()
        self.catalog = catalog or load_table_catalog()
        self.checkpoint_service = checkpoint_service or CheckpointService()
        self.extractor = TabularExtractor()
        self.tracker = ChangeTracker(self.tally_client, self.remote_client, self.compiler)

        self._lock = threading.Lock()
        self.cycle_count = 0
        self.current_cycle: Optional[SyncCycle] = None
        self.last_cycle: Optional[SyncCycle] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def validate_catalog(self) -> None:
        """
        Compila todas las tablas sin enviar nada a Tally.

        Raises:
            ConfigurationError: Si alguna tabla está mal definida
        """
        for table_spec in self.catalog.all_tables():
            self.compiler.compile(table_spec)

    def run_cycle(self, force_full: bool = False) -> Optional[SyncCycle]:
        """
        Ejecuta un ciclo de sincronización.

        Args:
            force_full: Ignora los AlterIDs y extrae todas las tablas

        Returns:
            SyncCycle con el resumen, o None si ya había un ciclo en curso
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Ya hay un ciclo de sincronización en curso. Disparo descartado.")
            return None

        self.cycle_count += 1
        cycle = SyncCycle(
            cycle_number=self.cycle_count,
            started_at=datetime.now(timezone.utc),
            status=CycleStatus.RUNNING
        )
        self.current_cycle = cycle
        logger.info(f"=== Ciclo #{cycle.cycle_number} iniciado{' (completo forzado)' if force_full else ''} ===")

        try:
            self._execute_cycle(cycle, force_full)
        except (ConfigurationError, TransportError, ParseError, RemoteStoreError) as e:
            logger.error(f"Ciclo #{cycle.cycle_number} abortado: {e}")
            cycle.status = CycleStatus.ABORTED
            cycle.error = str(e)
        except Exception as e:
            logger.exception(f"Error inesperado en ciclo #{cycle.cycle_number}: {e}")
            cycle.status = CycleStatus.ABORTED
            cycle.error = f"Error inesperado: {e}"
        finally:
            cycle.finished_at = datetime.now(timezone.utc)
            self.last_cycle = cycle
            self.current_cycle = None
            self._lock.release()

        logger.info(
            f"=== Ciclo #{cycle.cycle_number} {cycle.status.value}: {cycle.total_records} registros, "
            f"{len(cycle.failed_tables)} tablas fallidas, {cycle.duration_seconds:.2f}s ==="
        )
        return cycle

    def _execute_cycle(self, cycle: SyncCycle, force_full: bool) -> None:
        self.validate_catalog()

        if not self.tally_client.test_connection():
            raise TransportError(f"Tally no responde en {self.tally_client.url}")
        if not self.remote_client.health():
            raise RemoteStoreError(f"Remote store no disponible en {self.remote_client.api_base}")

        checkpoint = self.checkpoint_service.load()
        local = checkpoint.counters if checkpoint else None

        decision = self.tracker.assess(floor=local)
        cycle.decision = decision

        reset_requested = self.checkpoint_service.full_sync_requested()
        full = force_full or decision.cold_start or reset_requested
        baseline = (decision.remote or AlterCounters()).merge(local)
        cycle.counters_before = baseline

        if full:
            cycle.mode = SyncMode.FULL
            partitions = [Partition.MASTER, Partition.TRANSACTION]
            if reset_requested:
                logger.info("Checkpoint reseteado: se ejecutará extracción completa")
        elif decision.has_changes:
            cycle.mode = SyncMode.INCREMENTAL
            partitions = decision.changed_partitions
        else:
            logger.info("Sin cambios en Tally. Nada que sincronizar.")
            cycle.status = CycleStatus.IDLE
            cycle.counters_after = baseline
            return

        completed = []
        for partition in partitions:
            floor = None if full else baseline.get(partition)
            results = [
                self._sync_table(table_spec, cycle.mode, floor)
                for table_spec in self.catalog.tables_for(partition)
            ]
            cycle.tables.extend(results)
            if all(r.success for r in results):
                completed.append(partition)
            else:
                logger.warning(f"Partición {partition.value} incompleta: su AlterID no avanza")

        counters = baseline
        for partition in completed:
            counters = counters.with_partition(partition, max(decision.source.get(partition), baseline.get(partition)))
        counters = counters.merge(local)

        if completed:
            persisted = self._persist_counters(counters, cycle)
        else:
            persisted = True
            cycle.counters_after = baseline
        if persisted:
            cycle.partitions_advanced = [p for p in completed if counters.get(p) > baseline.get(p)]

        failed = bool(cycle.failed_tables) or not persisted
        cycle.status = CycleStatus.PARTIAL if failed else CycleStatus.COMPLETED
        if full and not failed:
            self.checkpoint_service.clear_full_sync_request()
        self._log_remote_summary()

    def _persist_counters(self, counters: AlterCounters, cycle: SyncCycle) -> bool:
        """Guarda los AlterIDs en el destino y luego en el checkpoint local"""
        try:
            self.remote_client.persist_counters(counters, cycle.mode)
        except ReplicationError as e:
            logger.error(f"No se pudieron persistir los AlterIDs en el destino: {e}")
            cycle.counters_after = cycle.counters_before
            return False

        self.checkpoint_service.save(counters, cycle.cycle_number)
        cycle.counters_after = counters
        return True

    def _sync_table(self, table_spec: TableSpec, mode: SyncMode, floor: Optional[int]) -> TableSyncResult:
        """
        Extrae y replica una tabla. Los errores quedan contenidos en la tabla.

        Args:
            table_spec: Tabla a sincronizar
            mode: Modo del ciclo
            floor: AlterID mínimo (None para extracción completa)
        """
        start_time = time.time()
        query_spec = table_spec if floor is None else table_spec.with_filters(alter_id_filter(floor))
        timeout = settings.TALLY_BULK_TIMEOUT if table_spec.partition == Partition.TRANSACTION else None

        logger.info(f"Sincronizando {table_spec.name} -> {table_spec.destination} ({mode.value})")

        try:
            raw = self.tally_client.send(self.compiler.compile(query_spec), timeout=timeout)
            records = add_provenance(
                self.extractor.parse(raw, table_spec),
                company_id=self.remote_client.company_id,
                division_id=self.remote_client.division_id,
                source=settings.SYNC_SOURCE_TAG
            )
            replication = self.remote_client.push(
                table_spec.destination,
                records,
                sync_mode=mode,
                metadata={"source_table": table_spec.name, "partition": table_spec.partition.value}
            )
        except (ConfigurationError, TransportError, ParseError) as e:
            logger.error(f"✗ {table_spec.name}: {e}")
            return self._failed_table(table_spec, str(e), start_time)
        except Exception as e:
            logger.exception(f"Error inesperado en {table_spec.name}: {e}")
            return self._failed_table(table_spec, f"Error inesperado: {e}", start_time)

        return TableSyncResult(
            table=table_spec.name,
            target_table=table_spec.destination,
            partition=table_spec.partition,
            success=replication.success,
            records=replication.total_records,
            accepted=replication.accepted,
            batches=replication.total_batches,
            failed_batches=replication.failed_batches,
            error="; ".join(replication.errors) or None,
            duration_seconds=round(time.time() - start_time, 2)
        )

    @staticmethod
    def _failed_table(table_spec: TableSpec, error: str, start_time: float) -> TableSyncResult:
        return TableSyncResult(
            table=table_spec.name,
            target_table=table_spec.destination,
            partition=table_spec.partition,
            success=False,
            error=error,
            duration_seconds=round(time.time() - start_time, 2)
        )

    def _log_remote_summary(self) -> None:
        client_stats = self.remote_client.get_client_stats()
        logger.info(
            f"Remote store: {client_stats['total_api_calls']} llamadas API, "
            f"{client_stats['total_retries']} reintentos"
        )
        try:
            stats = self.remote_client.get_stats()
        except RemoteStoreError as e:
            logger.warning(f"No se pudo obtener el resumen del destino: {e}")
            return
        logger.info(f"Destino: {stats.get('total_records', 0)} registros totales")
        for table, count in (stats.get('table_counts') or {}).items():
            logger.debug(f"  {table}: {count}")

    def test_connections(self) -> dict:
        """
        Prueba las conexiones con Tally y el remote store.

        Returns:
            dict con el estado de las conexiones
        """
        logger.info("Probando conexiones con Tally y el remote store...")

        tally_ok = self.tally_client.test_connection()
        remote_ok = self.remote_client.health()

        result = {
            "tally": {
                "status": "OK" if tally_ok else "ERROR",
                "message": f"Conexión exitosa ({self.tally_client.url})" if tally_ok else "Tally no responde"
            },
            "remote_store": {
                "status": "OK" if remote_ok else "ERROR",
                "message": (
                    f"Conexión exitosa ({self.remote_client.api_base})" if remote_ok
                    else "Remote store no disponible"
                )
            },
            "overall": "OK" if (tally_ok and remote_ok) else "ERROR"
        }

        logger.info(f"Test de conexiones completado: {result['overall']}")
        return result

    def preview(self) -> dict:
        """
        Muestra qué haría el próximo ciclo sin extraer ni replicar.

        Raises:
            TransportError: Si Tally no responde
            ParseError: Si los AlterIDs de Tally no se pueden interpretar
        """
        checkpoint = self.checkpoint_service.load()
        decision: ChangeDecision = self.tracker.assess(floor=checkpoint.counters if checkpoint else None)

        if decision.cold_start or self.checkpoint_service.full_sync_requested():
            mode = SyncMode.FULL
            tables = [t.name for t in self.catalog.all_tables()]
        elif decision.has_changes:
            mode = SyncMode.INCREMENTAL
            tables = [t.name for p in decision.changed_partitions for t in self.catalog.tables_for(p)]
        else:
            mode = None
            tables = []

        return {
            "mode": mode.value if mode else "none",
            "tables": tables,
            "decision": decision.model_dump(mode='json'),
            "checkpoint": checkpoint.counters.model_dump() if checkpoint else None
        }

    def extract_table(self, name: str, limit: int = 5) -> dict:
        """
        Extrae una tabla de Tally sin replicarla (diagnóstico).

        Args:
            name: Nombre de la tabla en el catálogo
            limit: Cantidad de registros de muestra a retornar

        Raises:
            KeyError: Si la tabla no existe en el catálogo
            TransportError: Si Tally no responde
            ParseError: Si la respuesta no se puede interpretar
        """
        table_spec = self.catalog.get(name)
        if table_spec is None:
            raise KeyError(f"Tabla '{name}' no existe en el catálogo")

        timeout = settings.TALLY_BULK_TIMEOUT if table_spec.partition == Partition.TRANSACTION else None
        start_time = time.time()
        raw = self.tally_client.send(self.compiler.compile(table_spec), timeout=timeout)
        records = self.extractor.parse(raw, table_spec)

        return {
            "table": table_spec.name,
            "target_table": table_spec.destination,
            "total_records": len(records),
            "fields": [f.name for f in table_spec.fields],
            "sample": records[:limit],
            "duration_seconds": round(time.time() - start_time, 2)
        }

    def status(self) -> dict:
        """Estado actual del orquestador"""
        return {
            "running": self.is_running,
            "cycle_count": self.cycle_count,
            "current_cycle": self.current_cycle.cycle_number if self.current_cycle else None,
            "last_cycle": self.last_cycle.summary() if self.last_cycle else None,
            "checkpoint": self.checkpoint_service.get_info(),
            "remote_client": self.remote_client.get_client_stats()
        }
