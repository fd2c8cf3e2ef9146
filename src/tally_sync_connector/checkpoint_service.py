"""
Servicio para gestionar el checkpoint local de AlterIDs.
"""
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .config import settings
from .models import AlterCounters, CheckpointState

logger = logging.getLogger(__name__)


class CheckpointService:
    """Guarda localmente los últimos AlterIDs persistidos en el destino"""

    MAX_BACKUPS = 3
    FILE_NAME = "alter_counters.json"
    FULL_SYNC_FLAG = "full_sync.requested"

    def __init__(self, checkpoint_dir: Optional[Union[str, Path]] = None):
        """Inicializa el servicio de checkpoint"""
        directory = Path(checkpoint_dir or settings.CHECKPOINT_DIR)
        self.CHECKPOINT_PATH = directory / self.FILE_NAME
        self.BACKUP_PATH = directory / f"{self.FILE_NAME}.backup"
        self.FULL_SYNC_PATH = directory / self.FULL_SYNC_FLAG

        self.CHECKPOINT_PATH.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[CheckpointState]:
        """Carga el checkpoint. Retorna None si no existe o está corrupto"""
        if not self.CHECKPOINT_PATH.exists():
            logger.info("No existe checkpoint local previo.")
            return None

        try:
            with open(self.CHECKPOINT_PATH, 'r', encoding='utf-8') as f:
                state = CheckpointState(**json.load(f))
            logger.debug(
                f"Checkpoint cargado: master={state.counters.master}, "
                f"transaction={state.counters.transaction}"
            )
            return state

        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Checkpoint corrupto: {e}. Se usarán solo los AlterIDs del destino.")
            return None

    def save(self, counters: AlterCounters, cycle_number: Optional[int] = None) -> bool:
        """Guarda los AlterIDs con timestamp"""
        try:
            self.create_backup()

            state = CheckpointState(counters=counters, updated_at=datetime.now(), cycle_number=cycle_number)
            with open(self.CHECKPOINT_PATH, 'w', encoding='utf-8') as f:
                json.dump(state.model_dump(mode='json'), f, indent=2)

            self.CHECKPOINT_PATH.chmod(0o600)

            logger.info(f"Checkpoint guardado: master={counters.master}, transaction={counters.transaction}")
            return True

        except OSError as e:
            logger.error(f"Error al guardar checkpoint: {e}")
            return False

    def create_backup(self) -> bool:
        """Crea backup del checkpoint antes de actualizar"""
        if not self.CHECKPOINT_PATH.exists():
            return True

        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            backup_with_ts = Path(f"{self.BACKUP_PATH}.{timestamp}")
            shutil.copy2(self.CHECKPOINT_PATH, backup_with_ts)

            # Rotar backups antiguos
            backups = sorted(self.CHECKPOINT_PATH.parent.glob(f"{self.BACKUP_PATH.name}.*"))
            if len(backups) > self.MAX_BACKUPS:
                for old_backup in backups[:-self.MAX_BACKUPS]:
                    old_backup.unlink()
                    logger.debug(f"Backup antiguo eliminado: {old_backup}")

            return True

        except OSError as e:
            logger.warning(f"Error al crear backup: {e}")
            return False

    def reset(self) -> bool:
        """Elimina el checkpoint y marca la próxima sincronización como completa"""
        try:
            if self.CHECKPOINT_PATH.exists():
                self.create_backup()
                self.CHECKPOINT_PATH.unlink()
            self.FULL_SYNC_PATH.touch()
            logger.info("Checkpoint eliminado. Próxima sync será completa.")
            return True
        except OSError as e:
            logger.error(f"Error al eliminar checkpoint: {e}")
            return False

    def full_sync_requested(self) -> bool:
        return self.FULL_SYNC_PATH.exists()

    def clear_full_sync_request(self) -> None:
        """Se llama cuando un ciclo completo terminó sin tablas fallidas"""
        if self.FULL_SYNC_PATH.exists():
            self.FULL_SYNC_PATH.unlink()
            logger.info("Solicitud de sync completa atendida")

    def get_info(self) -> dict:
        """Obtiene información del checkpoint actual"""
        if not self.CHECKPOINT_PATH.exists():
            return {
                "exists": False,
                "full_sync_requested": self.full_sync_requested(),
                "message": "No existe checkpoint previo"
            }

        state = self.load()
        if not state:
            return {
                "exists": True,
                "corrupted": True,
                "message": "Checkpoint corrupto"
            }

        return {
            "exists": True,
            "last_alter_id_master": state.counters.master,
            "last_alter_id_transaction": state.counters.transaction,
            "updated_at": state.updated_at.isoformat(),
            "cycle_number": state.cycle_number,
            "full_sync_requested": self.full_sync_requested(),
            "file_size_kb": round(self.CHECKPOINT_PATH.stat().st_size / 1024, 2),
            "file_path": str(self.CHECKPOINT_PATH)
        }
