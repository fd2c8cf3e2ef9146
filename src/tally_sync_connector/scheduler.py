"""
Scheduler periódico del ciclo de sincronización.
"""
import asyncio
import logging
import threading
from typing import Optional

from .config import settings
from .models import SyncCycle
from .sync_service import SyncService

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Timer cooperativo que dispara un ciclo al iniciar y luego cada
    SYNC_INTERVAL_MINUTES.

    Cada ciclo corre en un thread daemon propio, fuera del executor del
    event loop: al apagar, el proceso no espera al ciclo en curso. Los
    ticks que llegan mientras un ciclo sigue corriendo se descartan.
    """

    def __init__(self, sync_service: SyncService, interval_minutes: Optional[float] = None):
        self.sync_service = sync_service
        self.interval_seconds = (interval_minutes or settings.SYNC_INTERVAL_MINUTES) * 60
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self.ticks = 0
        self.dropped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Inicia el timer en el event loop actual"""
        if self.is_running:
            logger.warning("El scheduler ya está corriendo")
            return
        logger.info(f"Scheduler iniciado: un ciclo cada {self.interval_seconds / 60:g} minutos")
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Detiene el timer. Un ciclo en curso termina por su cuenta en su thread."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._inflight is not None and not self._inflight.done():
            logger.info("Scheduler detenido con un ciclo en curso; no se espera su término")
        logger.info("Scheduler detenido")

    async def _loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval_seconds)

    def tick(self) -> bool:
        """
        Despacha un ciclo si no hay otro en curso.

        Returns:
            True si se despachó un ciclo
        """
        self.ticks += 1
        if (self._inflight is not None and not self._inflight.done()) or self.sync_service.is_running:
            self.dropped_ticks += 1
            logger.info(f"Tick #{self.ticks} descartado: ciclo anterior en curso")
            return False

        self._inflight = asyncio.create_task(self._run_cycle())
        return True

    async def _run_cycle(self) -> Optional[SyncCycle]:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(result: Optional[SyncCycle]) -> None:
            if not future.done():
                future.set_result(result)

        def run() -> None:
            try:
                result = self.sync_service.run_cycle()
            except Exception as e:
                logger.exception(f"Error no controlado en ciclo programado: {e}")
                result = None
            try:
                loop.call_soon_threadsafe(deliver, result)
            except RuntimeError:
                logger.info("Ciclo programado terminó después de cerrar el event loop")

        threading.Thread(target=run, name="tally-sync-cycle", daemon=True).start()
        return await future

    async def wait_inflight(self) -> Optional[SyncCycle]:
        """Espera al ciclo despachado más reciente"""
        if self._inflight is None:
            return None
        return await self._inflight

    def get_info(self) -> dict:
        return {
            "running": self.is_running,
            "interval_minutes": self.interval_seconds / 60,
            "ticks": self.ticks,
            "dropped_ticks": self.dropped_ticks
        }
