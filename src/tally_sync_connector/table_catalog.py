"""
Catálogo de tablas (TableSpecs) cargado desde YAML.
"""
import logging
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from .config import settings
from .models import Partition, TableSpec
from .query_compiler import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "tables.yaml"


def order_tables(tables: list[TableSpec]) -> list[TableSpec]:
    """
    Ordena por (sync_priority, orden de declaración) y garantiza que cada
    tabla padre quede antes que sus hijas.

    Raises:
        ConfigurationError: Si un padre no existe en la partición o hay un ciclo
    """
    names = {t.name for t in tables}
    for table in tables:
        if table.parent and table.parent not in names:
            raise ConfigurationError(
                f"La tabla '{table.name}' declara parent '{table.parent}' inexistente en {table.partition.value}"
            )

    pending = [t for _, t in sorted(enumerate(tables), key=lambda item: (item[1].sync_priority, item[0]))]
    ordered: list[TableSpec] = []
    emitted: set[str] = set()

    while pending:
        ready = next((t for t in pending if not t.parent or t.parent in emitted), None)
        if ready is None:
            raise ConfigurationError(f"Dependencia circular entre tablas: {[t.name for t in pending]}")
        ordered.append(ready)
        emitted.add(ready.name)
        pending.remove(ready)

    return ordered


class TableCatalog:
    """Conjunto de TableSpecs por partición"""

    def __init__(self, tables: list[TableSpec]):
        names = [t.name for t in tables]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ConfigurationError(f"Tablas duplicadas en el catálogo: {duplicated}")

        self._tables = {t.name: t for t in tables}
        self._master = order_tables([t for t in tables if t.partition == Partition.MASTER])
        self._transaction = order_tables([t for t in tables if t.partition == Partition.TRANSACTION])

    def master_tables(self) -> list[TableSpec]:
        return list(self._master)

    def transaction_tables(self) -> list[TableSpec]:
        return list(self._transaction)

    def tables_for(self, partition: Partition) -> list[TableSpec]:
        """Tablas de una partición en orden de sincronización"""
        return self.master_tables() if partition == Partition.MASTER else self.transaction_tables()

    def all_tables(self) -> list[TableSpec]:
        """Todas las tablas: masters primero, luego transacciones"""
        return self._master + self._transaction

    def get(self, name: str) -> Optional[TableSpec]:
        return self._tables.get(name)

    def __len__(self) -> int:
        return len(self._tables)


def parse_catalog(data: dict) -> TableCatalog:
    """
    Valida el contenido del YAML (secciones master y transaction).

    Raises:
        ConfigurationError: Si la estructura o algún TableSpec es inválido
    """
    if not isinstance(data, dict):
        raise ConfigurationError("El catálogo debe ser un mapa con secciones 'master' y 'transaction'")

    tables = []
    for partition in Partition:
        entries = data.get(partition.value) or []
        if not isinstance(entries, list):
            raise ConfigurationError(f"La sección '{partition.value}' debe ser una lista")
        for entry in entries:
            try:
                tables.append(TableSpec(**{**entry, "partition": partition}))
            except (TypeError, ValidationError) as e:
                name = entry.get("name") if isinstance(entry, dict) else entry
                raise ConfigurationError(f"Tabla inválida '{name}': {e}") from e

    if not tables:
        raise ConfigurationError("El catálogo no declara tablas")
    return TableCatalog(tables)


def load_table_catalog(path: Optional[Union[str, Path]] = None) -> TableCatalog:
    """
    Carga el catálogo de tablas.

    Args:
        path: Ruta al YAML (default: TABLES_CONFIG_PATH o el catálogo incluido)

    Raises:
        ConfigurationError: Si el archivo no existe o es inválido
    """
    catalog_path = Path(path or settings.TABLES_CONFIG_PATH or DEFAULT_CATALOG_PATH)
    if not catalog_path.exists():
        raise ConfigurationError(f"No existe el catálogo de tablas: {catalog_path}")

    try:
        with open(catalog_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML inválido en {catalog_path}: {e}") from e

    catalog = parse_catalog(data)
    logger.info(
        f"Catálogo cargado desde {catalog_path}: {len(catalog.master_tables())} masters, "
        f"{len(catalog.transaction_tables())} transacciones"
    )
    return catalog
