"""
Detección de cambios por AlterID (high-water mark por partición).
"""
import logging
import re
from typing import Optional

from .config import settings
from .extractor import ParseError
from .models import AlterCounters, ChangeDecision
from .query_compiler import QueryCompiler
from .remote_client import RemoteStoreClient, RemoteStoreError
from .tally_client import TallyClient

logger = logging.getLogger(__name__)

BUSY_MARKER = re.compile(r'in progress', re.IGNORECASE)


class CounterReadError(Exception):
    """Excepción para cuando no se pueden leer los AlterIDs del remote store"""
    pass


def parse_alter_id_response(raw: str) -> AlterCounters:
    """
    Parsea la respuesta delimitada por comas: "<master>","<transaction>".

    Raises:
        ParseError: Si la respuesta no trae dos enteros
    """
    lines = [line.strip() for line in (raw or '').splitlines() if line.strip()]
    if not lines:
        raise ParseError("Tally no retornó AlterIDs")

    values = [value.strip().strip('"').strip() for value in lines[0].split(',')]
    if len(values) < 2:
        raise ParseError(f"Respuesta de AlterIDs inesperada: {lines[0][:100]}")

    try:
        master, transaction = int(values[0]), int(values[1])
    except ValueError as e:
        raise ParseError(f"AlterIDs no numéricos: {lines[0][:100]}") from e

    if master < 0 or transaction < 0:
        raise ParseError(f"AlterIDs negativos: {lines[0][:100]}")
    return AlterCounters(master=master, transaction=transaction)


def is_busy_sentinel(metadata: dict) -> bool:
    """El destino responde ceros + mensaje mientras hay un bulk load en curso"""
    if metadata.get('busy') is True or 'error' in metadata:
        return True
    return bool(BUSY_MARKER.search(str(metadata.get('message') or '')))


class ChangeTracker:
    """
    Compara los AlterIDs de Tally con los persistidos en el destino.

    Master y transaction avanzan de forma independiente. Ante la duda
    (destino vacío o metadata ilegible) se elige extracción completa.
    """

    def __init__(
        self,
        tally_client: TallyClient,
        remote_client: RemoteStoreClient,
        compiler: QueryCompiler,
        cold_start_threshold: Optional[int] = None
    ):
        self.tally_client = tally_client
        self.remote_client = remote_client
        self.compiler = compiler
        self.cold_start_threshold = (
            settings.COLD_START_THRESHOLD if cold_start_threshold is None else cold_start_threshold
        )

    def get_remote_counters(self) -> AlterCounters:
        """
        Lee los últimos AlterIDs persistidos en el destino.

        Raises:
            CounterReadError: Por timeout, error de red, success false o sentinel de ocupado
        """
        try:
            metadata = self.remote_client.get_metadata()
        except RemoteStoreError as e:
            raise CounterReadError(f"No se pudo leer metadata del destino: {e}") from e

        if is_busy_sentinel(metadata):
            raise CounterReadError(
                f"Destino ocupado: {metadata.get('message') or metadata.get('error') or 'bulk load en curso'}"
            )

        try:
            counters = AlterCounters(
                master=int(metadata.get('last_alter_id_master') or 0),
                transaction=int(metadata.get('last_alter_id_transaction') or 0)
            )
        except (TypeError, ValueError) as e:
            raise CounterReadError(f"AlterIDs inválidos en metadata: {e}") from e

        logger.info(f"AlterIDs en destino: master={counters.master}, transaction={counters.transaction}")
        return counters

    def get_source_counters(self) -> AlterCounters:
        """
        Lee los AlterIDs actuales de la empresa en Tally.

        Raises:
            TransportError: Si Tally no responde
            ParseError: Si la respuesta no se puede interpretar
        """
        raw = self.tally_client.send(self.compiler.compile_alter_id_request())
        counters = parse_alter_id_response(raw)
        logger.info(f"AlterIDs en Tally: master={counters.master}, transaction={counters.transaction}")
        return counters

    def is_destination_cold(self) -> tuple[bool, Optional[int]]:
        """
        Indica si el destino está (casi) vacío.

        Returns:
            (cold, total_records). Si no se pudo leer stats se asume frío.
        """
        try:
            stats = self.remote_client.get_stats()
            total = int(stats.get('total_records') or 0)
        except (RemoteStoreError, TypeError, ValueError) as e:
            logger.warning(f"No se pudo verificar el estado del destino, se asume vacío: {e}")
            return True, None

        cold = total < self.cold_start_threshold
        if cold:
            logger.info(f"Destino con {total} registros (< {self.cold_start_threshold}): extracción completa")
        return cold, total

    def decide(self, remote: AlterCounters, source: AlterCounters) -> ChangeDecision:
        """Una partición cambió si el AlterID de Tally supera al persistido"""
        master_changed = source.master > remote.master
        transaction_changed = source.transaction > remote.transaction

        if master_changed or transaction_changed:
            reason = (
                f"master {remote.master}->{source.master}, "
                f"transaction {remote.transaction}->{source.transaction}"
            )
        else:
            reason = "Sin cambios en Tally"

        return ChangeDecision(
            master_changed=master_changed,
            transaction_changed=transaction_changed,
            remote=remote,
            source=source,
            reason=reason
        )

    def assess(self, floor: Optional[AlterCounters] = None) -> ChangeDecision:
        """
        Decide el alcance del próximo ciclo.

        El chequeo de destino vacío tiene precedencia sobre la comparación
        de AlterIDs. Una metadata ilegible se trata como destino vacío.

        Args:
            floor: AlterIDs ya persistidos localmente; el baseline nunca baja de este valor

        Raises:
            TransportError: Si Tally no responde al leer los AlterIDs
            ParseError: Si los AlterIDs de Tally no se pueden interpretar
        """
        source = self.get_source_counters()

        cold, total = self.is_destination_cold()
        if cold:
            return ChangeDecision(
                cold_start=True,
                master_changed=True,
                transaction_changed=True,
                source=source,
                remote_total_records=total,
                reason="Destino vacío o sin stats"
            )

        try:
            remote = self.get_remote_counters()
        except CounterReadError as e:
            logger.warning(f"{e}. Se ejecutará extracción completa")
            return ChangeDecision(
                cold_start=True,
                master_changed=True,
                transaction_changed=True,
                source=source,
                remote_total_records=total,
                reason=f"Metadata no disponible: {e}"
            )

        decision = self.decide(remote.merge(floor), source)
        decision.remote_total_records = total
        logger.info(f"Decisión: {decision.reason}")
        return decision
