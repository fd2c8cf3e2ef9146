"""
Punto de entrada principal para el conector Tally-Remote Store.
"""
import uvicorn

from .config import settings


def main():
    """
    Ejecuta el servidor FastAPI del conector con uvicorn.
    """
    uvicorn.run(
        "tally_sync_connector.api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=False,  # Desactivar reload en producción
        log_level=settings.LOG_LEVEL.lower()
    )


def serve_store():
    """
    Ejecuta el remote store de referencia (en memoria) para pruebas locales.
    """
    uvicorn.run(
        "tally_sync_connector.remote_store:create_store_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
