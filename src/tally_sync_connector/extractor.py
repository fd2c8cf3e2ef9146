"""
Extractor tabular: convierte la respuesta XML de Tally en registros tipados.
"""
import logging
import math
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable, NamedTuple, Optional

from .models import FieldType, Record, TableSpec

logger = logging.getLogger(__name__)

GUID_FIELD = "guid"

# Valores que Tally usa para "vacío" ($$StrByCharCode:241 y su variante mal decodificada)
BLANK_SENTINELS = {"ñ", "±"}
TRUE_VALUES = {"1", "true", "yes"}
NUMERIC_TYPES = {FieldType.NUMBER, FieldType.AMOUNT, FieldType.QUANTITY, FieldType.RATE}

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
ROW_SPLIT_PATTERN = re.compile(r'\r?\n')

# Limpieza del XML de Tally hacia un formato de líneas delimitadas por tab
CLEANUP_STEPS = [
    (re.compile(r'<FLDBLANK></FLDBLANK>'), ''),
    (re.compile(r'\s+\r\n'), ''),
    (re.compile(r'\r\n'), ''),
    (re.compile(r'\t'), ' '),
    (re.compile(r'\s+<F'), '<F'),
    (re.compile(r'</F\d+>'), ''),
    (re.compile(r'<F01>'), '\r\n'),
    (re.compile(r'<F\d+>'), '\t'),
]

ENTITY_STEPS = [
    ('&amp;', '&'),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&apos;', "'"),
    ('&tab;', ''),
]
NUMERIC_ENTITY_PATTERN = re.compile(r'&#\d+;')

LINE_ERROR_PATTERN = re.compile(r'<LINEERROR>(.*?)</LINEERROR>', re.DOTALL)
RESPONSE_PATTERN = re.compile(r'^\s*<RESPONSE>(.*?)</RESPONSE>\s*$', re.DOTALL)
STATUS_ERROR_PATTERN = re.compile(r'<STATUS>\s*0\s*</STATUS>')


class ParseError(Exception):
    """Excepción para respuestas de Tally con forma inesperada"""
    pass


class FieldSlot(NamedTuple):
    """Posición y tipo de un campo dentro de la fila"""
    position: int
    type: FieldType


@lru_cache(maxsize=128)
def _compile_field_index(layout: tuple) -> dict[str, FieldSlot]:
    return {name: FieldSlot(position, field_type) for position, (name, field_type) in enumerate(layout)}


def build_field_index(table_spec: TableSpec) -> dict[str, FieldSlot]:
    """
    Índice nombre -> (posición, tipo) compilado una vez por layout de tabla.
    """
    layout = tuple((f.name, f.type) for f in table_spec.fields)
    return _compile_field_index(layout)


def coerce_value(value: Optional[str], field_type: FieldType) -> Any:
    """
    Convierte una celda de texto al tipo semántico del campo.

    Nunca lanza excepciones: vacíos y centinelas dan None (False para
    logical), numéricos inválidos dan 0 y fechas inválidas dan None.
    """
    text = (value or '').strip()
    if not text or text in BLANK_SENTINELS:
        return False if field_type == FieldType.LOGICAL else None

    if field_type == FieldType.LOGICAL:
        return text.lower() in TRUE_VALUES

    if field_type in NUMERIC_TYPES:
        try:
            number = float(text.replace(',', ''))
        except ValueError:
            return 0
        return number if math.isfinite(number) else 0

    if field_type == FieldType.DATE:
        if not DATE_PATTERN.match(text):
            return None
        try:
            datetime.strptime(text, '%Y-%m-%d')
        except ValueError:
            return None
        return text

    return text


def _check_error_response(raw: str, table_name: str) -> None:
    line_error = LINE_ERROR_PATTERN.search(raw)
    if line_error:
        raise ParseError(f"Tally reportó un error para '{table_name}': {line_error.group(1).strip()}")

    response = RESPONSE_PATTERN.match(raw)
    if response:
        raise ParseError(f"Respuesta inesperada de Tally para '{table_name}': {response.group(1).strip()}")

    if STATUS_ERROR_PATTERN.search(raw):
        raise ParseError(f"Tally retornó STATUS 0 para '{table_name}'")


def flatten_response(raw: str) -> str:
    """
    Etapa 1: quita el envelope y los tags de campo dejando una fila por línea
    y las celdas separadas por tab.
    """
    processed = raw.replace('<ENVELOPE>', '', 1).replace('</ENVELOPE>', '', 1)
    for pattern, replacement in CLEANUP_STEPS:
        processed = pattern.sub(replacement, processed)
    for entity, replacement in ENTITY_STEPS:
        processed = processed.replace(entity, replacement)
    return NUMERIC_ENTITY_PATTERN.sub('', processed)


class TabularExtractor:
    """
    Convierte la respuesta de Tally de una tabla en una lista de registros.

    Cada respuesta se procesa completa y de nuevo (sin parseo incremental).
    """

    def parse(self, raw: str, table_spec: TableSpec) -> list[Record]:
        """
        Parsea la respuesta de Tally.

        Args:
            raw: Texto XML retornado por Tally
            table_spec: Descriptor de la tabla consultada

        Returns:
            Lista de registros con GUID no vacío

        Raises:
            ParseError: Si la respuesta es un error de Tally o las filas no calzan con los campos
        """
        if not raw or not raw.strip():
            logger.info(f"Tally no retornó datos para {table_spec.name}")
            return []

        _check_error_response(raw, table_spec.name)

        field_index = build_field_index(table_spec)
        field_count = len(field_index)

        # El primer segmento es lo que precede a la primera fila
        lines = ROW_SPLIT_PATTERN.split(flatten_response(raw))[1:]

        records = []
        dropped = 0
        for line_number, line in enumerate(lines, 1):
            if not line.strip():
                continue

            cells = line.split('\t')
            if len(cells) > field_count:
                raise ParseError(
                    f"Fila {line_number} de '{table_spec.name}' trae {len(cells)} celdas, "
                    f"se esperaban {field_count}"
                )

            record = {}
            for name, slot in field_index.items():
                cell = cells[slot.position] if slot.position < len(cells) else ''
                record[name] = coerce_value(cell, slot.type)

            if not is_valid_row(record):
                dropped += 1
                continue
            records.append(record)

        if dropped:
            logger.warning(f"{table_spec.name}: {dropped} filas sin GUID omitidas")
        logger.info(f"{table_spec.name}: {len(records)} registros extraídos")
        return records


def is_valid_row(record: Record) -> bool:
    """Una fila es válida solo si su GUID no está vacío"""
    guid = record.get(GUID_FIELD)
    return isinstance(guid, str) and bool(guid.strip())


def add_provenance(
    records: Iterable[Record],
    company_id: str,
    division_id: str,
    source: str,
    timestamp: Optional[datetime] = None
) -> list[Record]:
    """Agrega a cada registro los identificadores del tenant y el origen"""
    sync_timestamp = (timestamp or datetime.now(timezone.utc)).isoformat()
    return [
        {
            **record,
            "company_id": company_id,
            "division_id": division_id,
            "sync_timestamp": sync_timestamp,
            "source": source
        }
        for record in records
    ]
