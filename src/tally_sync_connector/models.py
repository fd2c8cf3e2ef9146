"""
Modelos Pydantic para validación de datos del conector Tally-Remote Store.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, validator

# Un registro extraído: nombre de columna -> valor coercionado
Record = dict[str, Any]


class FieldType(str, Enum):
    """Tipos semánticos de un campo de Tally"""
    TEXT = "text"
    LOGICAL = "logical"
    DATE = "date"
    NUMBER = "number"
    AMOUNT = "amount"
    QUANTITY = "quantity"
    RATE = "rate"


class Partition(str, Enum):
    """Particiones de detección de cambios (cada una con su propio AlterID)"""
    MASTER = "master"
    TRANSACTION = "transaction"


class SyncMode(str, Enum):
    """Modo de sincronización enviado al remote store como sync_type"""
    FULL = "full"
    INCREMENTAL = "incremental"
    TEST = "test"


class FieldDescriptor(BaseModel):
    """
    Campo de una tabla: expresión de Tally + tipo semántico + nombre de salida.
    """
    name: str = Field(description="Nombre de la columna en el registro de salida")
    field: str = Field(description="Expresión o identificador de Tally (ej: Guid, ..Guid)")
    type: FieldType = Field(default=FieldType.TEXT, description="Tipo semántico del campo")


class TableSpec(BaseModel):
    """
    Descriptor declarativo de una tabla a extraer desde Tally.

    El orden de `fields` define el mapeo posicional al parsear la respuesta.
    """
    name: str = Field(description="Nombre lógico de la tabla (ej: mst_ledger)")
    partition: Partition = Field(description="Partición de AlterID a la que pertenece")
    collection: Optional[str] = Field(
        default=None,
        description="Ruta de colección en Tally separada por puntos (ej: Voucher.AllLedgerEntries)"
    )
    fields: list[FieldDescriptor] = Field(description="Campos en orden posicional")
    fetch: list[str] = Field(default_factory=list, description="Lista FETCH de la colección")
    filters: list[str] = Field(default_factory=list, description="Fórmulas de filtro (AND implícito)")
    target_table: Optional[str] = Field(default=None, description="Tabla destino en el remote store")
    sync_priority: int = Field(default=999, description="Prioridad de sincronización (menor = primero)")
    parent: Optional[str] = Field(default=None, description="Tabla padre que debe replicarse antes")

    class Config:
        """Configuración del modelo"""
        json_schema_extra = {
            "example": {
                "name": "mst_ledger",
                "partition": "master",
                "collection": "Ledger",
                "fields": [
                    {"name": "guid", "field": "Guid", "type": "text"},
                    {"name": "name", "field": "Name", "type": "text"},
                    {"name": "opening_balance", "field": "OpeningBalance", "type": "amount"}
                ],
                "fetch": [],
                "filters": [],
                "target_table": "ledgers",
                "sync_priority": 2
            }
        }

    @validator('fields')
    def validate_fields(cls, v):
        """Debe existir un campo guid y los nombres no pueden repetirse"""
        names = [f.name for f in v]
        if 'guid' not in names:
            raise ValueError("La tabla debe declarar un campo 'guid'")
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ValueError(f"Campos duplicados: {duplicated}")
        return v

    @property
    def destination(self) -> str:
        """Nombre de la tabla en el remote store"""
        return self.target_table or self.name

    def with_filters(self, *extra_filters: str) -> "TableSpec":
        """Retorna una copia con filtros adicionales al final de la lista"""
        return self.model_copy(update={"filters": [*self.filters, *extra_filters]})


class AlterCounters(BaseModel):
    """
    High-water marks de AlterID por partición. Nunca decrecen.
    """
    master: int = Field(default=0, ge=0, description="AlterID de masters")
    transaction: int = Field(default=0, ge=0, description="AlterID de vouchers")

    def get(self, partition: Partition) -> int:
        """Valor para una partición"""
        return self.master if partition == Partition.MASTER else self.transaction

    def with_partition(self, partition: Partition, value: int) -> "AlterCounters":
        """Copia con el valor de una partición reemplazado"""
        return self.model_copy(update={partition.value: value})

    def merge(self, other: Optional["AlterCounters"]) -> "AlterCounters":
        """Combina con otro par tomando el máximo de cada partición"""
        if other is None:
            return self
        return AlterCounters(
            master=max(self.master, other.master),
            transaction=max(self.transaction, other.transaction)
        )


class Batch(BaseModel):
    """Slice ordenado de registros de una tabla para un bulk-sync"""
    table: str = Field(description="Tabla destino")
    records: list[Record] = Field(default_factory=list, description="Registros del batch")
    batch_number: int = Field(description="Índice del batch (1-based)", ge=1)
    total_batches: int = Field(description="Total de batches de la tabla", ge=1)

    @property
    def size(self) -> int:
        return len(self.records)


class ChangeDecision(BaseModel):
    """Resultado de la detección de cambios"""
    cold_start: bool = Field(default=False, description="Destino vacío: extracción completa")
    master_changed: bool = Field(default=False, description="La partición master cambió")
    transaction_changed: bool = Field(default=False, description="La partición transaction cambió")
    remote: Optional[AlterCounters] = Field(default=None, description="AlterIDs en el remote store")
    source: Optional[AlterCounters] = Field(default=None, description="AlterIDs actuales en Tally")
    remote_total_records: Optional[int] = Field(default=None, description="Registros totales en destino")
    reason: str = Field(default="", description="Motivo de la decisión")

    @property
    def changed_partitions(self) -> list[Partition]:
        """Particiones a extraer en modo incremental"""
        partitions = []
        if self.master_changed:
            partitions.append(Partition.MASTER)
        if self.transaction_changed:
            partitions.append(Partition.TRANSACTION)
        return partitions

    @property
    def has_changes(self) -> bool:
        return self.cold_start or self.master_changed or self.transaction_changed


class ReplicationResult(BaseModel):
    """Resultado del push de una tabla al remote store"""
    table: str = Field(description="Tabla destino")
    total_records: int = Field(default=0, description="Registros recibidos para replicar")
    accepted: int = Field(default=0, description="Registros aceptados por el destino")
    total_batches: int = Field(default=0, description="Batches generados")
    failed_batches: list[int] = Field(default_factory=list, description="Números de batch fallidos")
    skipped_batches: int = Field(default=0, description="Batches no enviados (política abort)")
    retries: int = Field(default=0, description="Reintentos realizados")
    errors: list[str] = Field(default_factory=list, description="Mensajes de error por batch")

    @property
    def success(self) -> bool:
        return not self.failed_batches and self.skipped_batches == 0


class TableSyncResult(BaseModel):
    """Resultado de extraer y replicar una tabla"""
    table: str = Field(description="Tabla de Tally")
    target_table: str = Field(description="Tabla destino")
    partition: Partition = Field(description="Partición")
    success: bool = Field(description="Indica si la tabla se completó sin errores")
    records: int = Field(default=0, description="Registros extraídos")
    accepted: int = Field(default=0, description="Registros aceptados por el destino")
    batches: int = Field(default=0, description="Batches enviados")
    failed_batches: list[int] = Field(default_factory=list, description="Batches fallidos")
    error: Optional[str] = Field(default=None, description="Error si la tabla falló")
    duration_seconds: float = Field(default=0.0, description="Duración de la tabla")


class CycleStatus(str, Enum):
    """Estado final de un ciclo"""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"
    IDLE = "idle"


class SyncCycle(BaseModel):
    """
    Resumen de un ciclo del orquestador.
    """
    cycle_number: int = Field(description="Número de ciclo desde el arranque")
    started_at: datetime = Field(description="Inicio del ciclo")
    finished_at: Optional[datetime] = Field(default=None, description="Fin del ciclo")
    status: CycleStatus = Field(default=CycleStatus.IDLE, description="Estado final")
    mode: Optional[SyncMode] = Field(default=None, description="Modo ejecutado")
    decision: Optional[ChangeDecision] = Field(default=None, description="Decisión del tracker")
    tables: list[TableSyncResult] = Field(default_factory=list, description="Resultados por tabla")
    counters_before: Optional[AlterCounters] = Field(default=None, description="Baseline al iniciar")
    counters_after: Optional[AlterCounters] = Field(default=None, description="AlterIDs persistidos")
    partitions_advanced: list[Partition] = Field(default_factory=list, description="Particiones avanzadas")
    error: Optional[str] = Field(default=None, description="Error que abortó el ciclo")

    @property
    def total_records(self) -> int:
        return sum(t.records for t in self.tables)

    @property
    def failed_tables(self) -> list[str]:
        return [t.table for t in self.tables if not t.success]

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> dict:
        """Resumen serializable del ciclo para API y CLI"""
        data = self.model_dump(mode='json')
        data.update({
            "total_records": self.total_records,
            "failed_tables": self.failed_tables,
            "duration_seconds": round(self.duration_seconds, 2)
        })
        return data


class CheckpointState(BaseModel):
    """Checkpoint local de los AlterIDs persistidos"""
    counters: AlterCounters = Field(description="Últimos AlterIDs persistidos")
    updated_at: datetime = Field(description="Momento de la última actualización")
    cycle_number: Optional[int] = Field(default=None, description="Ciclo que lo escribió")
