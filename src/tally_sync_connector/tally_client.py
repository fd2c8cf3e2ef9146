"""
Cliente para el servidor XML de Tally.
"""
import logging
from typing import Optional

import requests

from .config import settings
from .query_compiler import QueryCompiler

logger = logging.getLogger(__name__)

# Tally espera y responde XML en UTF-16
REQUEST_ENCODING = 'utf-16-le'
UTF16_BOMS = (b'\xff\xfe', b'\xfe\xff')


class TransportError(Exception):
    """Excepción para errores de conexión con Tally"""
    pass


class TallyTimeoutError(TransportError):
    """Tally no respondió dentro del timeout"""
    pass


def decode_payload(content: bytes) -> str:
    """
    Decodifica la respuesta de Tally.

    Con BOM se respeta el orden de bytes; sin BOM se asume UTF-16LE si el
    contenido trae bytes nulos y UTF-8 en caso contrario.
    """
    if not content:
        return ''
    if content.startswith(UTF16_BOMS):
        return content.decode('utf-16', errors='replace')
    if len(content) % 2 == 0 and b'\x00' in content:
        return content.decode('utf-16-le', errors='replace')
    return content.decode('utf-8', errors='replace')


class TallyClient:
    """
    Cliente HTTP para el servidor XML de Tally.

    Cada llamada abre su propia conexión (sin sesión persistente) y no
    reintenta: los reintentos los decide el orquestador en el siguiente ciclo.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        """Inicializa el cliente de Tally"""
        self.host = host or settings.TALLY_HOST
        self.port = port or settings.TALLY_PORT
        self.timeout = timeout or settings.TALLY_TIMEOUT
        self.url = f"http://{self.host}:{self.port}"
        self.total_requests = 0

    def send(self, xml_request: str, timeout: Optional[float] = None) -> str:
        """
        Envía una petición XML a Tally y retorna la respuesta como texto.

        Args:
            xml_request: XML de la petición
            timeout: Timeout en segundos (default: TALLY_TIMEOUT)

        Returns:
            str: Respuesta completa de Tally

        Raises:
            TallyTimeoutError: Si Tally no responde a tiempo
            TransportError: Si hay error de conexión o HTTP
        """
        timeout = timeout or self.timeout
        body = xml_request.encode(REQUEST_ENCODING)
        headers = {
            'Content-Type': 'text/xml;charset=utf-16',
            'Content-Length': str(len(body)),
            'Connection': 'close'
        }

        logger.debug(f"Enviando petición a Tally ({len(body)} bytes, timeout {timeout}s)")
        self.total_requests += 1

        try:
            response = requests.post(self.url, data=body, headers=headers, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            error_msg = f"Timeout de {timeout}s esperando respuesta de Tally en {self.url}"
            logger.error(error_msg)
            raise TallyTimeoutError(error_msg) from e
        except requests.exceptions.RequestException as e:
            error_msg = f"Error al conectar con Tally en {self.url}: {e}"
            logger.error(error_msg)
            raise TransportError(error_msg) from e

        text = decode_payload(response.content)
        logger.debug(f"Respuesta de Tally: {len(text)} caracteres")
        return text

    def test_connection(self) -> bool:
        """
        Prueba la conexión con Tally.

        Returns:
            True si Tally respondió
        """
        try:
            self.send(QueryCompiler.connection_test_request())
            logger.info(f"✓ Conexión exitosa con Tally ({self.url})")
            return True
        except TransportError as e:
            logger.error(f"✗ Error al conectar con Tally: {e}")
            return False
