"""
API FastAPI para el conector Tally-Remote Store.

Provee endpoints para disparar y monitorear la sincronización incremental.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .config import settings
from .extractor import ParseError
from .scheduler import SyncScheduler
from .sync_service import SyncService
from .tally_client import TransportError

# Configurar logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Instancia del servicio de sincronización (singleton)
sync_service = SyncService()
scheduler = SyncScheduler(sync_service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager para FastAPI.
    Inicia el scheduler y lo detiene al apagar.
    """
    logger.info("Iniciando conector Tally-Remote Store...")
    logger.info(f"Tally: {sync_service.tally_client.url} - Empresa: {settings.TALLY_COMPANY or '(activa)'}")
    logger.info(f"Remote store: {settings.REMOTE_API_BASE}")
    logger.info(f"Tenant: {settings.COMPANY_ID}/{settings.DIVISION_ID}")
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    yield
    await scheduler.stop()
    logger.info("Apagando conector Tally-Remote Store...")


# Crear aplicación FastAPI
app = FastAPI(
    title="Conector Tally-Remote Store",
    description="API para sincronizar datos de Tally a un remote store con detección de cambios por AlterID",
    version="1.0.0",
    lifespan=lifespan
)


def _busy() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Ya hay un ciclo de sincronización en curso"
    )


@app.get("/")
async def root():
    """
    Endpoint raíz para verificar que la API está funcionando.
    """
    return {
        "service": "Tally-Remote Store Connector",
        "status": "running",
        "version": "1.0.0",
        "mode": "incremental_alter_id",
        "scheduler": scheduler.get_info()
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    """
    return {"status": "healthy", "sync_running": sync_service.is_running}


@app.get("/test-connections")
async def test_connections():
    """
    Prueba las conexiones con Tally y el remote store.
    """
    logger.info("Probando conexiones...")
    try:
        return await run_in_threadpool(sync_service.test_connections)
    except Exception as e:
        logger.exception(f"Error al probar conexiones: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error al probar conexiones: {str(e)}"
        )


@app.post("/sync")
async def sync_now():
    """
    Ejecuta un ciclo de sincronización y espera su resultado.

    El ciclo decide por sí mismo si es completo, incremental o si no hay
    nada que hacer. Un ciclo que falla en alguna tabla igual retorna 200
    con status "partial"; el detalle está en `tables`.

    Raises:
        HTTPException 409: Si ya hay un ciclo en curso
    """
    cycle = await run_in_threadpool(sync_service.run_cycle)
    if cycle is None:
        raise _busy()
    return cycle.summary()


@app.post("/sync/full")
async def sync_full():
    """
    Fuerza un ciclo completo ignorando los AlterIDs.

    Útil después de una migración o si el destino fue limpiado.
    """
    cycle = await run_in_threadpool(sync_service.run_cycle, True)
    if cycle is None:
        raise _busy()
    return cycle.summary()


@app.post("/sync/async")
async def sync_async(background_tasks: BackgroundTasks, full: bool = False):
    """
    Inicia un ciclo en segundo plano y retorna inmediatamente.
    """
    if sync_service.is_running:
        raise _busy()

    def run_sync():
        cycle = sync_service.run_cycle(force_full=full)
        if cycle is None:
            logger.info("Ciclo background descartado: otro ciclo en curso")

    background_tasks.add_task(run_sync)

    return {
        "message": "Sincronización iniciada en segundo plano",
        "status": "processing",
        "mode": "full" if full else "auto"
    }


@app.get("/sync/status")
async def sync_status():
    """
    Estado del orquestador, último ciclo, checkpoint y scheduler.
    """
    return {**sync_service.status(), "scheduler": scheduler.get_info()}


@app.get("/sync/preview")
async def preview():
    """
    Muestra qué tablas sincronizaría el próximo ciclo sin ejecutarlo.
    """
    try:
        return await run_in_threadpool(sync_service.preview)
    except (TransportError, ParseError) as e:
        logger.error(f"Error al leer AlterIDs de Tally: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Error al consultar Tally: {str(e)}"
        )
    except Exception as e:
        logger.exception(f"Error en preview: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error: {str(e)}"
        )


@app.get("/tables")
async def list_tables():
    """
    Tablas del catálogo en orden de sincronización.
    """
    return {
        "master": [
            {"name": t.name, "target_table": t.destination, "collection": t.collection, "fields": len(t.fields)}
            for t in sync_service.catalog.master_tables()
        ],
        "transaction": [
            {
                "name": t.name,
                "target_table": t.destination,
                "collection": t.collection,
                "fields": len(t.fields),
                "parent": t.parent
            }
            for t in sync_service.catalog.transaction_tables()
        ]
    }


@app.get("/tables/{name}/preview")
async def preview_table(name: str, limit: int = Query(default=5, ge=1, le=100)):
    """
    Extrae una tabla de Tally sin replicarla y retorna una muestra.
    """
    if sync_service.catalog.get(name) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tabla '{name}' no existe en el catálogo"
        )
    try:
        return await run_in_threadpool(sync_service.extract_table, name, limit)
    except (TransportError, ParseError) as e:
        logger.error(f"Error al extraer {name}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Error al extraer '{name}': {str(e)}"
        )


@app.get("/checkpoint/info")
async def get_checkpoint_info():
    """
    Información del checkpoint local de AlterIDs.
    """
    return sync_service.checkpoint_service.get_info()


@app.post("/checkpoint/reset")
async def reset_checkpoint():
    """
    Elimina el checkpoint local para forzar un ciclo completo.
    """
    if not sync_service.checkpoint_service.reset():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error al eliminar checkpoint"
        )
    return {
        "success": True,
        "message": "Checkpoint eliminado. Próxima sync será completa."
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """
    Handler personalizado para HTTPException.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail
        }
    )
