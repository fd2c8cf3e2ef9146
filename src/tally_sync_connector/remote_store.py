"""
Remote store de referencia (FastAPI, en memoria).

Implementa el contrato que consume RemoteStoreClient: bulk-sync idempotente,
metadata de AlterIDs, query, stats y health. Mientras hay un bulk load en
curso, metadata y query responden de inmediato con un sentinel de ocupado.
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0

# Alias aceptados por /query
TABLE_ALIASES = {
    "cost_centers": "cost_centres",
    "uoms": "units",
    "accounting": "accounting_entries",
    "inventory": "inventory_entries",
}


class StoreBusyError(Exception):
    """El lock de escritura no se obtuvo dentro del timeout"""
    pass


class BulkLoadGuard:
    """
    Marca single-flight de bulk load con espera acotada.

    Las escrituras esperan el lock a lo sumo `lock_timeout` segundos; las
    lecturas consultan `in_progress` y no esperan.
    """

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._started_at: Optional[float] = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def elapsed_seconds(self) -> int:
        if self._started_at is None:
            return 0
        return int(time.monotonic() - self._started_at)

    @contextmanager
    def bulk_load(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise StoreBusyError(f"Bulk load en curso, lock no disponible tras {self.lock_timeout}s")
        self._started_at = time.monotonic()
        try:
            yield
        finally:
            self._started_at = None
            self._lock.release()


class BulkSyncRequest(BaseModel):
    """Body de POST /bulk-sync"""
    table: str = Field(min_length=1)
    data: list[dict[str, Any]]
    sync_type: str = "full"
    batch_info: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueryRequest(BaseModel):
    """Body de POST /query"""
    table: Optional[str] = None
    sql: Optional[str] = None
    filters: dict[str, Any] = Field(default_factory=dict)
    params: list[Any] = Field(default_factory=list)
    limit: int = Field(default=1000, ge=1)
    offset: int = Field(default=0, ge=0)


class InMemoryStore:
    """Tablas por tenant con clave natural (company_id, division_id, guid)"""

    def __init__(self):
        self.tables: dict[str, dict[tuple, dict]] = {}
        self.sync_metadata: dict[tuple, dict] = {}
        self._data_lock = threading.Lock()

    @staticmethod
    def clean_record(record: dict) -> dict:
        return {str(key).replace('\r', '').strip(): value for key, value in record.items()}

    def upsert(self, table: str, records: list[dict], company_id: str, division_id: str) -> tuple[int, int]:
        """Retorna (procesados, fallidos). Un registro sin guid cuenta como fallido."""
        processed = failed = 0
        with self._data_lock:
            rows = self.tables.setdefault(table, {})
            for record in records:
                row = self.clean_record(record)
                guid = str(row.get('guid') or '').strip()
                if not guid:
                    failed += 1
                    continue
                row.update({'guid': guid, 'company_id': company_id, 'division_id': division_id})
                rows[(company_id, division_id, guid)] = row
                processed += 1
        return processed, failed

    def record_sync(self, table: str, company_id: str, division_id: str, entry: dict) -> None:
        with self._data_lock:
            self.sync_metadata[(company_id, division_id, table)] = entry

    def tenant_metadata(self, company_id: str, division_id: str) -> list[tuple[str, dict]]:
        with self._data_lock:
            return [
                (key[2], dict(entry)) for key, entry in self.sync_metadata.items()
                if key[:2] == (company_id, division_id)
            ]

    def tenant_rows(self, table: str, company_id: str, division_id: str) -> list[dict]:
        with self._data_lock:
            rows = self.tables.get(table, {})
            return [dict(row) for key, row in rows.items() if key[:2] == (company_id, division_id)]

    def table_counts(self, company_id: str, division_id: str) -> dict[str, int]:
        with self._data_lock:
            return {
                table: sum(1 for key in rows if key[:2] == (company_id, division_id))
                for table, rows in self.tables.items()
            }


def validate_tenant(company_id: str, division_id: str) -> None:
    try:
        uuid.UUID(company_id)
        uuid.UUID(division_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="company_id y division_id deben ser UUIDs válidos"
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_store_app(lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> FastAPI:
    """
    Crea la app del remote store de referencia.

    El estado queda en `app.state.store` y `app.state.guard`.
    """
    store = InMemoryStore()
    guard = BulkLoadGuard(lock_timeout=lock_timeout)
    router = APIRouter(prefix="/api/v1")

    def busy_metadata(company_id: str, division_id: str) -> dict:
        return {
            "company_id": company_id,
            "division_id": division_id,
            "last_alter_id_master": 0,
            "last_alter_id_transaction": 0,
            "tables": {},
            "busy": True,
            "message": f"Bulk operation in progress ({guard.elapsed_seconds}s), metadata temporarily unavailable"
        }

    @router.get("/health")
    def health():
        return {
            "status": "healthy",
            "bulk_operation_in_progress": guard.in_progress,
            "timestamp": _now()
        }

    @router.post("/bulk-sync/{company_id}/{division_id}")
    def bulk_sync(company_id: str, division_id: str, request: BulkSyncRequest):
        validate_tenant(company_id, division_id)
        logger.info(f"Bulk sync: {len(request.data)} registros para {request.table} ({request.sync_type})")

        try:
            with guard.bulk_load():
                processed, failed = store.upsert(request.table, request.data, company_id, division_id)
                store.record_sync(request.table, company_id, division_id, {
                    "last_sync": _now(),
                    "sync_type": request.sync_type,
                    "records_processed": processed,
                    "records_failed": failed,
                    "metadata": dict(request.metadata)
                })
        except StoreBusyError as e:
            logger.warning(f"Bulk sync rechazado: {e}")
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        return {
            "success": True,
            "message": f"Bulk sync completed for {request.table}",
            "data": {
                "table": request.table,
                "total_records": len(request.data),
                "processed": processed,
                "failed": failed,
                "sync_type": request.sync_type,
                "batch_info": request.batch_info,
                "company_id": company_id,
                "division_id": division_id,
                "timestamp": _now()
            }
        }

    @router.get("/metadata/{company_id}/{division_id}")
    def metadata(company_id: str, division_id: str):
        validate_tenant(company_id, division_id)
        if guard.in_progress:
            return {"success": True, "data": busy_metadata(company_id, division_id)}

        response = {
            "company_id": company_id,
            "division_id": division_id,
            "last_alter_id_master": 0,
            "last_alter_id_transaction": 0,
            "tables": {}
        }
        for table, entry in store.tenant_metadata(company_id, division_id):
            response["tables"][table] = {
                "last_sync": entry["last_sync"],
                "sync_type": entry["sync_type"],
                "records_processed": entry["records_processed"],
                "records_failed": entry["records_failed"]
            }
            for key in ("last_alter_id_master", "last_alter_id_transaction"):
                value = entry["metadata"].get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    response[key] = max(response[key], value)

        return {"success": True, "data": response}

    @router.post("/query/{company_id}/{division_id}")
    def query(company_id: str, division_id: str, request: QueryRequest):
        validate_tenant(company_id, division_id)
        if request.sql:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Consultas SQL no soportadas por el store en memoria"
            )
        if not request.table:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Se requiere table o sql")
        if guard.in_progress:
            return {
                "success": False,
                "busy": True,
                "data": [],
                "message": f"Bulk operation in progress ({guard.elapsed_seconds}s), query temporarily unavailable"
            }

        table = TABLE_ALIASES.get(request.table, request.table)
        rows = [
            row for row in store.tenant_rows(table, company_id, division_id)
            if all(row.get(key) == value for key, value in request.filters.items())
        ]
        rows.sort(key=lambda row: (str(row.get('name') or row.get('date') or ''), row['guid']))

        total = len(rows)
        page = rows[request.offset:request.offset + request.limit]
        next_offset = request.offset + len(page) if request.offset + len(page) < total else None

        return {
            "success": True,
            "data": page,
            "total": total,
            "count": len(page),
            "limit": request.limit,
            "offset": request.offset,
            "next_offset": next_offset,
            "table": request.table,
            "timestamp": _now()
        }

    @router.get("/stats/{company_id}/{division_id}")
    def stats(company_id: str, division_id: str):
        validate_tenant(company_id, division_id)
        counts = store.table_counts(company_id, division_id)
        return {
            "success": True,
            "data": {
                "company_id": company_id,
                "division_id": division_id,
                "table_counts": counts,
                "total_records": sum(counts.values()),
                "timestamp": _now()
            }
        }

    app = FastAPI(
        title="Remote Store de referencia",
        description="Store en memoria con el contrato de bulk-sync, metadata, query y stats",
        version="1.0.0"
    )
    app.include_router(router)
    app.state.store = store
    app.state.guard = guard

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail
            }
        )

    return app
