"""
Cliente del remote store: bulk-sync por batches, metadata, stats y query.
"""
import logging
import time
from typing import Any, Optional

import requests

from .config import settings
from .models import AlterCounters, Batch, Record, ReplicationResult, SyncMode

logger = logging.getLogger(__name__)

# Tabla lógica donde el destino guarda los AlterIDs persistidos
COUNTERS_TABLE = "system_metadata"


class ReplicationError(Exception):
    """Excepción para batches rechazados por el remote store"""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class RemoteStoreError(Exception):
    """Excepción para errores en metadata, stats, query o health"""
    pass


class RemoteStoreClient:
    """
    Cliente HTTP para la API JSON del remote store.

    Este cliente maneja:
    1. Bulk-sync idempotente por batches (upsert por guid + tenant)
    2. Lectura de metadata (AlterIDs) y stats
    3. Consultas de lectura y health check
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        company_id: Optional[str] = None,
        division_id: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        """Inicializa el cliente del remote store"""
        self.api_base = (api_base or settings.REMOTE_API_BASE).rstrip('/')
        self.company_id = company_id or settings.COMPANY_ID
        self.division_id = division_id or settings.DIVISION_ID
        self.session = session or requests.Session()
        self.headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json'
        }
        self.batch_size = settings.BATCH_SIZE
        self.max_retries = settings.BATCH_MAX_RETRIES
        self.retry_delay = settings.BATCH_RETRY_DELAY
        self.failure_policy = settings.BATCH_FAILURE_POLICY
        self.total_api_calls = 0
        self.total_retries = 0

    def _tenant_url(self, endpoint: str) -> str:
        return f"{self.api_base}/{endpoint}/{self.company_id}/{self.division_id}"

    def _request(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        timeout: Optional[float] = None
    ) -> dict:
        """
        Ejecuta una llamada HTTP y retorna el JSON de respuesta.

        Raises:
            RemoteStoreError: Si la llamada falla o la respuesta no es JSON
        """
        timeout = timeout or settings.REMOTE_METADATA_TIMEOUT
        self.total_api_calls += 1
        try:
            response = self.session.request(
                method,
                url,
                json=payload,
                headers=self.headers,
                timeout=timeout
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise RemoteStoreError(f"Timeout de {timeout}s en {method} {url}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteStoreError(f"Error HTTP en {method} {url}: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Respuesta no JSON en {method} {url}") from e

    def create_batches(self, table: str, records: list[Record], batch_size: Optional[int] = None) -> list[Batch]:
        """
        Divide los registros en batches ordenados de tamaño máximo.

        Args:
            table: Tabla destino
            records: Registros a dividir
            batch_size: Tamaño máximo (default: BATCH_SIZE)

        Returns:
            Lista de batches (vacía si no hay registros)
        """
        if batch_size is None:
            batch_size = self.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size debe ser mayor a 0, recibido: {batch_size}")

        chunks = [records[i:i + batch_size] for i in range(0, len(records), batch_size)]
        batches = [
            Batch(table=table, records=chunk, batch_number=number, total_batches=len(chunks))
            for number, chunk in enumerate(chunks, 1)
        ]
        logger.debug(f"Creados {len(batches)} batches de hasta {batch_size} registros para {table}")
        return batches

    def _post_batch(
        self,
        batch: Batch,
        sync_mode: SyncMode,
        metadata: Optional[dict] = None,
        batch_size: Optional[int] = None
    ) -> dict:
        """
        Envía un batch al endpoint de bulk-sync (un solo intento).

        Raises:
            ReplicationError: Con retryable=True para 5xx, timeouts y errores de red
        """
        payload = {
            'table': batch.table,
            'data': batch.records,
            'sync_type': sync_mode.value,
            'batch_info': {
                'batch_number': batch.batch_number,
                'total_batches': batch.total_batches,
                'batch_size': batch_size or batch.size
            },
            'metadata': metadata or {}
        }

        self.total_api_calls += 1
        try:
            response = self.session.post(
                self._tenant_url('bulk-sync'),
                json=payload,
                headers=self.headers,
                timeout=settings.REMOTE_TIMEOUT
            )
        except requests.exceptions.Timeout as e:
            raise ReplicationError(f"Timeout de {settings.REMOTE_TIMEOUT}s en bulk-sync", retryable=True) from e
        except requests.exceptions.RequestException as e:
            raise ReplicationError(f"Error de red en bulk-sync: {e}", retryable=True) from e

        if response.status_code >= 500:
            raise ReplicationError(
                f"Error de servidor {response.status_code}: {response.text[:200]}",
                retryable=True
            )
        if response.status_code >= 400:
            raise ReplicationError(f"Batch rechazado ({response.status_code}): {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ReplicationError("Respuesta de bulk-sync no es JSON") from e

        if not data.get('success', False):
            raise ReplicationError(f"Batch rechazado: {data.get('error') or data.get('message') or data}")
        return data

    def _send_with_retry(self, batch: Batch, sync_mode: SyncMode, metadata: Optional[dict], batch_size: int) -> tuple[dict, int]:
        """Envía un batch reintentando solo errores transitorios. Retorna (respuesta, reintentos)"""
        retry_count = 0
        while True:
            try:
                return self._post_batch(batch, sync_mode, metadata, batch_size), retry_count
            except ReplicationError as e:
                if not e.retryable or retry_count >= self.max_retries:
                    raise
                retry_count += 1
                self.total_retries += 1
                logger.warning(
                    f"{batch.table} batch {batch.batch_number}/{batch.total_batches}: {e}. "
                    f"Reintento {retry_count}/{self.max_retries} en {self.retry_delay}s..."
                )
                time.sleep(self.retry_delay)

    def push(
        self,
        table: str,
        records: list[Record],
        sync_mode: SyncMode = SyncMode.INCREMENTAL,
        metadata: Optional[dict] = None
    ) -> ReplicationResult:
        """
        Replica los registros de una tabla en batches.

        Re-enviar un batch sin cambios no tiene efecto en el destino, por lo
        que la entrega at-least-once es segura.

        Args:
            table: Tabla destino
            records: Registros a replicar
            sync_mode: Modo enviado como sync_type
            metadata: Metadata adicional del batch

        Returns:
            ReplicationResult con el detalle por batch
        """
        batches = self.create_batches(table, records)
        result = ReplicationResult(table=table, total_records=len(records), total_batches=len(batches))

        if not batches:
            logger.info(f"{table}: sin registros para replicar")
            return result

        logger.info(f"Replicando {len(records)} registros de {table} en {len(batches)} batches")

        for index, batch in enumerate(batches):
            try:
                data, retries = self._send_with_retry(batch, sync_mode, metadata, self.batch_size)
            except ReplicationError as e:
                result.failed_batches.append(batch.batch_number)
                result.errors.append(f"batch {batch.batch_number}: {e}")
                logger.error(f"✗ {table} batch {batch.batch_number}/{batch.total_batches} falló: {e}")

                if self.failure_policy == 'abort':
                    result.skipped_batches = len(batches) - index - 1
                    if result.skipped_batches:
                        logger.warning(f"{table}: {result.skipped_batches} batches restantes omitidos")
                    break
                continue

            result.retries += retries
            processed = data.get('data', {}).get('processed') if isinstance(data.get('data'), dict) else None
            result.accepted += processed if isinstance(processed, int) else batch.size
            logger.debug(f"✓ {table} batch {batch.batch_number}/{batch.total_batches}: {batch.size} registros")

        logger.info(
            f"{table}: {result.accepted}/{result.total_records} aceptados, "
            f"{len(result.failed_batches)} batches fallidos"
        )
        return result

    def persist_counters(self, counters: AlterCounters, sync_mode: SyncMode) -> None:
        """
        Guarda los AlterIDs en el destino como metadata de la tabla system_metadata.

        Raises:
            ReplicationError: Si el destino rechaza la escritura
        """
        batch = Batch(table=COUNTERS_TABLE, records=[], batch_number=1, total_batches=1)
        metadata = {
            'last_alter_id_master': counters.master,
            'last_alter_id_transaction': counters.transaction
        }
        self._send_with_retry(batch, sync_mode, metadata, self.batch_size)
        logger.info(
            f"AlterIDs persistidos en el destino: master={counters.master}, "
            f"transaction={counters.transaction}"
        )

    def get_metadata(self) -> dict:
        """
        Obtiene la metadata de sincronización (AlterIDs y estado por tabla).

        Raises:
            RemoteStoreError: Si la llamada falla o success es false
        """
        data = self._request('GET', self._tenant_url('metadata'))
        if not data.get('success', False):
            raise RemoteStoreError(f"Metadata no disponible: {data.get('error') or data}")
        return data.get('data') or {}

    def get_stats(self) -> dict:
        """
        Obtiene conteos por tabla en el destino.

        Returns:
            dict con table_counts y total_records
        """
        data = self._request('GET', self._tenant_url('stats'))
        if not data.get('success', False):
            raise RemoteStoreError(f"Stats no disponibles: {data.get('error') or data}")
        return data.get('data') or {}

    def query(
        self,
        table: Optional[str] = None,
        filters: Optional[dict[str, Any]] = None,
        limit: int = 1000,
        offset: int = 0,
        sql: Optional[str] = None,
        params: Optional[list] = None
    ) -> dict:
        """
        Consulta de lectura sobre el destino.

        Returns:
            dict con data, total y next_offset
        """
        if not table and not sql:
            raise ValueError("Se requiere table o sql")

        payload: dict[str, Any] = {'limit': limit, 'offset': offset}
        if sql:
            payload['sql'] = sql
            payload['params'] = params or []
        else:
            payload['table'] = table
            payload['filters'] = filters or {}

        data = self._request('POST', self._tenant_url('query'), payload, timeout=settings.REMOTE_TIMEOUT)
        if not data.get('success', False):
            raise RemoteStoreError(f"Query falló: {data.get('error') or data}")
        return data

    def health(self) -> bool:
        """
        Verifica que el remote store responda.

        Returns:
            True si /health respondió correctamente
        """
        try:
            self._request('GET', f"{self.api_base}/health")
            logger.info(f"✓ Remote store disponible ({self.api_base})")
            return True
        except RemoteStoreError as e:
            logger.error(f"✗ Remote store no disponible: {e}")
            return False

    def get_client_stats(self) -> dict:
        """Estadísticas de uso del cliente"""
        return {
            "total_api_calls": self.total_api_calls,
            "total_retries": self.total_retries
        }
