"""
Configuración del conector Tally-Remote Store.

Carga las variables de entorno necesarias para la operación del conector.
"""
import uuid
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, validator


class Settings(BaseSettings):
    """
    Configuración de la aplicación cargada desde variables de entorno.
    """
    # Configuración de Tally (servidor XML local)
    TALLY_HOST: str = Field(
        default="localhost",
        description="Host donde escucha el servidor XML de Tally"
    )
    TALLY_PORT: int = Field(
        default=9000,
        description="Puerto del servidor XML de Tally"
    )
    TALLY_COMPANY: str = Field(
        default="",
        description="Nombre de la empresa en Tally (vacío = empresa activa)"
    )
    TALLY_FROM_DATE: str = Field(
        default="",
        description="Fecha inicial del período a exportar (ej: 20240401)"
    )
    TALLY_TO_DATE: str = Field(
        default="",
        description="Fecha final del período a exportar (ej: 20250331)"
    )
    TALLY_TIMEOUT: float = Field(
        default=30.0,
        description="Timeout en segundos por llamada a Tally"
    )
    TALLY_BULK_TIMEOUT: float = Field(
        default=45.0,
        description="Timeout en segundos para tablas de transacciones (más pesadas)"
    )

    # Configuración del remote store
    REMOTE_API_BASE: str = Field(
        ...,
        description="URL base de la API del remote store (ej: https://mi-app.up.railway.app/api/v1)"
    )
    REMOTE_TIMEOUT: float = Field(
        default=30.0,
        description="Timeout en segundos para llamadas de bulk-sync"
    )
    REMOTE_METADATA_TIMEOUT: float = Field(
        default=10.0,
        description="Timeout en segundos para metadata, stats y health"
    )

    # Identificadores del tenant
    COMPANY_ID: str = Field(
        ...,
        description="UUID de la empresa (tenant) en el remote store"
    )
    DIVISION_ID: str = Field(
        ...,
        description="UUID de la división (sub-tenant) en el remote store"
    )

    # Replicación
    BATCH_SIZE: int = Field(
        default=50,
        description="Número de registros por batch de bulk-sync",
        ge=1,
        le=250
    )
    BATCH_MAX_RETRIES: int = Field(
        default=2,
        description="Reintentos inmediatos por batch ante errores 5xx o de red",
        ge=0
    )
    BATCH_RETRY_DELAY: float = Field(
        default=2.0,
        description="Espera fija en segundos entre reintentos de un batch",
        ge=0
    )
    BATCH_FAILURE_POLICY: str = Field(
        default="continue",
        description="Qué hacer cuando un batch falla: 'continue' o 'abort'"
    )

    # Detección de cambios y scheduler
    COLD_START_THRESHOLD: int = Field(
        default=100,
        description="Si el remote store tiene menos registros, se fuerza extracción completa",
        ge=0
    )
    SYNC_INTERVAL_MINUTES: float = Field(
        default=5.0,
        description="Frecuencia del ciclo de sincronización en minutos",
        gt=0
    )
    SCHEDULER_ENABLED: bool = Field(
        default=True,
        description="Inicia el scheduler automáticamente junto con la API"
    )
    TABLES_CONFIG_PATH: Optional[str] = Field(
        default=None,
        description="Ruta al YAML con las tablas a extraer (None = catálogo incluido)"
    )
    CHECKPOINT_DIR: str = Field(
        default="./data",
        description="Directorio donde se guarda el checkpoint local de AlterIDs"
    )
    SYNC_SOURCE_TAG: str = Field(
        default="tally-sync",
        description="Etiqueta 'source' inyectada en cada registro"
    )

    # Configuración del servidor
    HOST: str = Field(
        default="0.0.0.0",
        description="Host donde escuchará el servidor FastAPI"
    )
    PORT: int = Field(
        default=8000,
        description="Puerto donde escuchará el servidor FastAPI"
    )

    # Configuración de logging
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Nivel de logging (DEBUG, INFO, WARNING, ERROR)"
    )

    @validator('REMOTE_API_BASE')
    def validate_remote_api_base(cls, v):
        """Valida que la URL del remote store tenga el formato correcto"""
        if not v.startswith(('http://', 'https://')):
            raise ValueError("REMOTE_API_BASE debe comenzar con http:// o https://")
        return v.rstrip('/')

    @validator('COMPANY_ID', 'DIVISION_ID')
    def validate_uuid(cls, v):
        """El remote store exige UUIDs para company_id y division_id"""
        try:
            uuid.UUID(v)
        except ValueError:
            raise ValueError(f"'{v}' no es un UUID válido")
        return v

    @validator('BATCH_FAILURE_POLICY')
    def validate_failure_policy(cls, v):
        """Valida la política de fallo de batch"""
        if v.lower() not in ('continue', 'abort'):
            raise ValueError("BATCH_FAILURE_POLICY debe ser 'continue' o 'abort'")
        return v.lower()

    @validator('LOG_LEVEL')
    def validate_log_level(cls, v):
        """Valida que el nivel de log sea válido"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {valid_levels}")
        return v.upper()

    class Config:
        """Configuración de Pydantic Settings"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Instancia global de configuración
settings = Settings()
