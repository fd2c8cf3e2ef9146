"""
Compilador de TableSpec a peticiones XML (TDL) para el servidor de Tally.
"""
import logging
import re
from typing import Optional
from xml.sax.saxutils import escape

from .models import FieldDescriptor, FieldType, TableSpec

logger = logging.getLogger(__name__)

# Identificador simple de Tally, opcionalmente referenciando al objeto padre (..)
IDENTIFIER_PATTERN = re.compile(r'^(\.\.)?[a-zA-Z0-9_]+$')

ROOT_COLLECTION = "MyCollection"
REPORT_NAME = "TallyDatabaseLoaderReport"

XML_ENTITIES = {'"': '&quot;', "'": '&apos;'}


class ConfigurationError(Exception):
    """Excepción para TableSpecs mal formados (se detecta antes de cualquier I/O)"""
    pass


def escape_xml(text: Optional[str]) -> str:
    """Escapa texto para insertarlo dentro de un elemento XML"""
    if not text:
        return ''
    return escape(text, XML_ENTITIES)


def _index(position: int) -> str:
    """Índice de dos dígitos usado en nombres de parts, lines, fields y filtros"""
    return f"{position:02d}"


def render_field_expression(descriptor: FieldDescriptor) -> str:
    """
    Traduce un campo a la expresión TDL que Tally evalúa por fila.

    Los campos que no son identificadores simples se envían tal cual.
    """
    field = descriptor.field
    if not IDENTIFIER_PATTERN.match(field):
        return field

    field_type = descriptor.type
    if field_type == FieldType.TEXT:
        return f"${field}"
    if field_type == FieldType.LOGICAL:
        return f"if ${field} then 1 else 0"
    if field_type == FieldType.DATE:
        return (
            f"if $$IsEmpty:${field} then $$StrByCharCode:241 "
            f"else $$PyrlYYYYMMDDFormat:${field}:\"-\""
        )
    if field_type == FieldType.NUMBER:
        return f"if $$IsEmpty:${field} then \"0\" else $$String:${field}"
    if field_type == FieldType.AMOUNT:
        return (
            f"$$StringFindAndReplace:(if $$IsDebit:${field} then -$$NumValue:${field} "
            f"else $$NumValue:${field}):\"(-)\":\"-\""
        )
    if field_type == FieldType.QUANTITY:
        return (
            f"$$StringFindAndReplace:(if $$IsInwards:${field} "
            f"then $$Number:$$String:${field}:\"TailUnits\" "
            f"else -$$Number:$$String:${field}:\"TailUnits\"):\"(-)\":\"-\""
        )
    if field_type == FieldType.RATE:
        return f"if $$IsEmpty:${field} then 0 else $$Number:${field}"
    return field


def render_filter_expression(expression: str) -> str:
    """Un filtro que es un identificador simple se referencia como $campo"""
    expression = expression.strip()
    if IDENTIFIER_PATTERN.match(expression):
        return f"${expression}"
    return expression


class QueryCompiler:
    """
    Genera el XML de exportación de Tally a partir de un TableSpec.

    La ruta de colección se divide por puntos: cada segmento produce un
    PART/LINE anidado (EXPLODE) y la última línea lista los campos.
    """

    def __init__(
        self,
        company: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ):
        self.company = company or ""
        self.from_date = from_date or ""
        self.to_date = to_date or ""

    def _static_variables(self, export_format: str) -> str:
        xml = f"<STATICVARIABLES><SVEXPORTFORMAT>{export_format}</SVEXPORTFORMAT>"
        if self.from_date:
            xml += f"<SVFROMDATE>{escape_xml(self.from_date)}</SVFROMDATE>"
        if self.to_date:
            xml += f"<SVTODATE>{escape_xml(self.to_date)}</SVTODATE>"
        if self.company:
            xml += f"<SVCURRENTCOMPANY>{escape_xml(self.company)}</SVCURRENTCOMPANY>"
        xml += "</STATICVARIABLES>"
        return xml

    def compile(self, table_spec: TableSpec) -> str:
        """
        Compila un TableSpec al XML de petición.

        Args:
            table_spec: Descriptor de la tabla

        Returns:
            str: XML listo para enviar a Tally

        Raises:
            ConfigurationError: Si falta la colección o no hay campos
        """
        collection = (table_spec.collection or "").strip()
        if not collection:
            raise ConfigurationError(f"La tabla '{table_spec.name}' no define 'collection'")
        if not table_spec.fields:
            raise ConfigurationError(f"La tabla '{table_spec.name}' no define campos")

        routes = [segment.strip() for segment in collection.split('.')]
        if any(not segment for segment in routes):
            raise ConfigurationError(f"Ruta de colección inválida en '{table_spec.name}': {collection}")

        target_collection = routes[0]
        routes[0] = ROOT_COLLECTION

        xml = (
            '<?xml version="1.0" encoding="utf-8"?><ENVELOPE><HEADER><VERSION>1</VERSION>'
            '<TALLYREQUEST>Export</TALLYREQUEST><TYPE>Data</TYPE>'
            f'<ID>{REPORT_NAME}</ID></HEADER><BODY><DESC>'
        )
        xml += self._static_variables("XML (Data Interchange)")
        xml += (
            f'<TDL><TDLMESSAGE><REPORT NAME="{REPORT_NAME}"><FORMS>MyForm</FORMS></REPORT>'
            '<FORM NAME="MyForm"><PARTS>MyPart01</PARTS></FORM>'
        )

        # Un PART por cada nivel de la ruta
        for i, route in enumerate(routes, 1):
            xml += (
                f'<PART NAME="MyPart{_index(i)}"><LINES>MyLine{_index(i)}</LINES>'
                f'<REPEAT>MyLine{_index(i)} : {route}</REPEAT><SCROLLED>Vertical</SCROLLED></PART>'
            )

        # Las líneas intermedias solo explotan hacia el siguiente nivel
        for i in range(1, len(routes)):
            xml += (
                f'<LINE NAME="MyLine{_index(i)}"><FIELDS>FldBlank</FIELDS>'
                f'<EXPLODE>MyPart{_index(i + 1)}</EXPLODE></LINE>'
            )

        field_names = ','.join(f"Fld{_index(i)}" for i in range(1, len(table_spec.fields) + 1))
        xml += f'<LINE NAME="MyLine{_index(len(routes))}"><FIELDS>{field_names}</FIELDS></LINE>'

        for i, descriptor in enumerate(table_spec.fields, 1):
            xml += (
                f'<FIELD NAME="Fld{_index(i)}"><SET>{render_field_expression(descriptor)}</SET>'
                f'<XMLTAG>F{_index(i)}</XMLTAG></FIELD>'
            )

        # Campo de relleno que cierra los rangos de índices
        xml += '<FIELD NAME="FldBlank"><SET>""</SET></FIELD>'

        xml += f'<COLLECTION NAME="{ROOT_COLLECTION}"><TYPE>{target_collection}</TYPE>'
        if table_spec.fetch:
            xml += f"<FETCH>{','.join(table_spec.fetch)}</FETCH>"
        if table_spec.filters:
            filter_names = ','.join(f"Fltr{_index(j)}" for j in range(1, len(table_spec.filters) + 1))
            xml += f"<FILTER>{filter_names}</FILTER>"
        xml += '</COLLECTION>'

        for j, expression in enumerate(table_spec.filters, 1):
            xml += (
                f'<SYSTEM TYPE="Formulae" NAME="Fltr{_index(j)}">'
                f'{render_filter_expression(expression)}</SYSTEM>'
            )

        xml += '</TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>'

        logger.debug(
            f"XML compilado para {table_spec.name}: {len(routes)} niveles, "
            f"{len(table_spec.fields)} campos, {len(table_spec.filters)} filtros"
        )
        return xml

    def compile_alter_id_request(self) -> str:
        """
        Petición que retorna los AlterIDs actuales (masters, vouchers) de la empresa.

        La respuesta llega en formato ASCII delimitado por comas.
        """
        company_filter = ""
        collection_filter = ""
        if self.company:
            collection_filter = "<FILTER>FilterActiveCompany</FILTER>"
            company_filter = (
                '<SYSTEM TYPE="Formulae" NAME="FilterActiveCompany">'
                f'$$IsEqual:"{escape_xml(self.company)}":$Name</SYSTEM>'
            )

        return (
            '<?xml version="1.0" encoding="utf-8"?><ENVELOPE><HEADER><VERSION>1</VERSION>'
            '<TALLYREQUEST>Export</TALLYREQUEST><TYPE>Data</TYPE><ID>MyReport</ID></HEADER>'
            '<BODY><DESC><STATICVARIABLES><SVEXPORTFORMAT>ASCII (Comma Delimited)</SVEXPORTFORMAT>'
            '</STATICVARIABLES><TDL><TDLMESSAGE>'
            '<REPORT NAME="MyReport"><FORMS>MyForm</FORMS></REPORT>'
            '<FORM NAME="MyForm"><PARTS>MyPart</PARTS></FORM>'
            '<PART NAME="MyPart"><LINES>MyLine</LINES><REPEAT>MyLine : MyCollection</REPEAT>'
            '<SCROLLED>Vertical</SCROLLED></PART>'
            '<LINE NAME="MyLine"><FIELDS>FldAlterMaster,FldAlterTransaction</FIELDS></LINE>'
            '<FIELD NAME="FldAlterMaster"><SET>$AltMstId</SET></FIELD>'
            '<FIELD NAME="FldAlterTransaction"><SET>$AltVchId</SET></FIELD>'
            f'<COLLECTION NAME="MyCollection"><TYPE>Company</TYPE>{collection_filter}</COLLECTION>'
            f'{company_filter}'
            '</TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>'
        )

    @staticmethod
    def connection_test_request() -> str:
        """Petición mínima para verificar que el servidor XML de Tally responde"""
        return (
            '<?xml version="1.0" encoding="utf-8"?><ENVELOPE><HEADER><VERSION>1</VERSION>'
            '<TALLYREQUEST>Export</TALLYREQUEST><TYPE>Data</TYPE><ID>List of Accounts</ID></HEADER>'
            '<BODY><DESC><STATICVARIABLES><SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>'
            '</STATICVARIABLES></DESC></BODY></ENVELOPE>'
        )
