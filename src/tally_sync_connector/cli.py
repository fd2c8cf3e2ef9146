"""
CLI para ejecutar la sincronización Tally -> remote store desde línea de comandos.
"""
import asyncio
import json
import logging
import signal
import sys

from .config import settings
from .extractor import ParseError
from .models import SyncCycle
from .query_compiler import ConfigurationError
from .scheduler import SyncScheduler
from .sync_service import SyncService
from .tally_client import TransportError

# Configurar logging para CLI
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60 + "\n")


def test_connections():
    """Prueba las conexiones con Tally y el remote store"""
    _header("PROBANDO CONEXIONES")

    sync_service = SyncService()
    result = sync_service.test_connections()

    tally_status = result["tally"]
    print(f"TALLY ({sync_service.tally_client.url}):")
    print(f"  Estado: {tally_status['status']}")
    print(f"  Mensaje: {tally_status['message']}")
    print()

    remote_status = result["remote_store"]
    print(f"REMOTE STORE ({settings.REMOTE_API_BASE}):")
    print(f"  Estado: {remote_status['status']}")
    print(f"  Mensaje: {remote_status['message']}")
    print()

    overall = result["overall"]
    print("-" * 60)
    print(f"RESULTADO GENERAL: {overall}")
    print("-" * 60)

    return 0 if overall == "OK" else 1


def print_cycle(cycle: SyncCycle, verbose: bool = False) -> None:
    """Muestra el resumen de un ciclo"""
    _header(f"RESUMEN DEL CICLO #{cycle.cycle_number}")

    print(f"Estado:               {cycle.status.value}")
    print(f"Modo:                 {cycle.mode.value if cycle.mode else 'none'}")
    if cycle.decision:
        print(f"Decisión:             {cycle.decision.reason}")
    print(f"Registros extraídos:  {cycle.total_records}")
    print(f"Tablas procesadas:    {len(cycle.tables)}")
    print(f"Tablas fallidas:      {len(cycle.failed_tables)}")
    if cycle.counters_before:
        print(f"AlterIDs iniciales:   master={cycle.counters_before.master}, "
              f"transaction={cycle.counters_before.transaction}")
    if cycle.counters_after:
        print(f"AlterIDs persistidos: master={cycle.counters_after.master}, "
              f"transaction={cycle.counters_after.transaction}")
    print(f"Tiempo total:         {cycle.duration_seconds:.2f}s")
    if cycle.error:
        print(f"Error:                {cycle.error}")
    print()

    tables = cycle.tables if verbose else [t for t in cycle.tables if not t.success]
    if tables:
        print("-" * 60)
        print("DETALLES POR TABLA" if verbose else "TABLAS FALLIDAS")
        print("-" * 60 + "\n")
        for result in tables:
            status_icon = "✓" if result.success else "✗"
            print(f"{status_icon} {result.table} -> {result.target_table}")
            print(f"  Registros: {result.records} (aceptados: {result.accepted}, batches: {result.batches})")
            if result.error:
                print(f"  Error: {result.error}")
            print()


def sync_once(verbose: bool = False, full: bool = False):
    """Ejecuta un ciclo de sincronización"""
    _header(f"SINCRONIZACIÓN {'COMPLETA' if full else 'INCREMENTAL'} TALLY → REMOTE STORE")

    print(f"Tally:        {settings.TALLY_HOST}:{settings.TALLY_PORT}")
    print(f"Remote store: {settings.REMOTE_API_BASE}")
    if full:
        print("⚠️  FULL MODE: Ignorando AlterIDs, extracción completa")
    print()

    try:
        sync_service = SyncService()
    except ConfigurationError as e:
        print(f"\n❌ ERROR DE CONFIGURACIÓN:\n   {e}\n")
        return 1

    cycle = sync_service.run_cycle(force_full=full)
    print_cycle(cycle, verbose=verbose)

    return 0 if cycle.status.value in ("completed", "idle") else 1


async def _run_scheduler(sync_service: SyncService) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    scheduler = SyncScheduler(sync_service)
    scheduler.start()
    await stop_event.wait()
    await scheduler.stop()


def run_scheduler():
    """Ejecuta ciclos periódicos hasta recibir SIGINT/SIGTERM"""
    _header("SCHEDULER DE SINCRONIZACIÓN")
    print(f"Intervalo: {settings.SYNC_INTERVAL_MINUTES:g} minutos (Ctrl+C para detener)\n")

    try:
        sync_service = SyncService()
    except ConfigurationError as e:
        print(f"\n❌ ERROR DE CONFIGURACIÓN:\n   {e}\n")
        return 1

    asyncio.run(_run_scheduler(sync_service))
    print("\n✓ Scheduler detenido.")
    return 0


def preview_changes():
    """Muestra qué haría el próximo ciclo sin ejecutarlo"""
    _header("PREVIEW DEL PRÓXIMO CICLO (SIN EJECUTAR SYNC)")

    try:
        result = SyncService().preview()
    except (ConfigurationError, TransportError, ParseError) as e:
        print(f"❌ Error: {e}")
        return 1

    decision = result["decision"]
    print(f"Modo:       {result['mode']}")
    print(f"Decisión:   {decision['reason']}")
    if decision.get("source"):
        print(f"Tally:      master={decision['source']['master']}, "
              f"transaction={decision['source']['transaction']}")
    if decision.get("remote"):
        print(f"Destino:    master={decision['remote']['master']}, "
              f"transaction={decision['remote']['transaction']}")
    print()

    if not result["tables"]:
        print("✓ No hay cambios. El próximo ciclo no extraerá datos.")
        return 0

    print("Tablas a sincronizar:")
    for name in result["tables"]:
        print(f"  - {name}")
    print()
    return 0


def list_tables():
    """Lista las tablas del catálogo"""
    _header("CATÁLOGO DE TABLAS")

    try:
        sync_service = SyncService()
    except ConfigurationError as e:
        print(f"❌ Error: {e}")
        return 1

    for label, tables in (
        ("MASTER", sync_service.catalog.master_tables()),
        ("TRANSACTION", sync_service.catalog.transaction_tables())
    ):
        print(f"{label}:")
        for table in tables:
            parent = f" (padre: {table.parent})" if table.parent else ""
            print(f"  {table.name:<20} -> {table.destination:<22} {len(table.fields)} campos{parent}")
        print()
    return 0


def extract_table(name: str, limit: int = 5):
    """Extrae una tabla sin replicarla y muestra una muestra de registros"""
    _header(f"EXTRACCIÓN DE PRUEBA: {name}")

    try:
        result = SyncService().extract_table(name, limit)
    except KeyError as e:
        print(f"❌ {e.args[0]}")
        return 1
    except (ConfigurationError, TransportError, ParseError) as e:
        print(f"❌ Error: {e}")
        return 1

    print(f"Registros extraídos: {result['total_records']} en {result['duration_seconds']}s")
    print(f"Campos: {', '.join(result['fields'])}")
    print()
    for record in result["sample"]:
        print(json.dumps(record, ensure_ascii=False, indent=2))
    return 0


def checkpoint_info():
    """Muestra información del checkpoint local"""
    _header("INFORMACIÓN DEL CHECKPOINT")

    info = SyncService().checkpoint_service.get_info()

    if not info.get('exists'):
        print("❌ No existe checkpoint previo.")
        print("   Se usarán los AlterIDs persistidos en el destino.")
        if info.get("full_sync_requested"):
            print("   La próxima sincronización será completa (reset solicitado).")
        return 0

    if info.get('corrupted'):
        print("⚠️  Checkpoint corrupto.")
        print("   Se usarán los AlterIDs persistidos en el destino.")
        return 1

    print(f"✓ AlterID master:        {info['last_alter_id_master']}")
    print(f"  AlterID transaction:   {info['last_alter_id_transaction']}")
    print(f"  Actualizado:           {info['updated_at']}")
    print(f"  Ubicación:             {info['file_path']}")
    if info.get("full_sync_requested"):
        print("  ⚠️  Próxima sincronización completa (reset solicitado)")
    print()
    return 0


def reset_checkpoint():
    """Elimina el checkpoint para forzar sync completa"""
    _header("RESETEAR CHECKPOINT")

    print("⚠️  Esto eliminará el checkpoint y forzará una sincronización completa.")

    if SyncService().checkpoint_service.reset():
        print("✓ Checkpoint eliminado exitosamente.")
        print("  La próxima sincronización será completa.")
        return 0

    print("❌ Error al eliminar checkpoint.")
    return 1


def main():
    """Punto de entrada del CLI"""
    import argparse

    parser = argparse.ArgumentParser(
        description="Conector Tally -> Remote Store v1.0.0",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Ejemplos:
  %(prog)s sync                    Ejecutar un ciclo (completo o incremental según AlterIDs)
  %(prog)s sync --full             Forzar ciclo completo
  %(prog)s run                     Ciclos periódicos cada SYNC_INTERVAL_MINUTES
  %(prog)s test                    Probar conexiones
  %(prog)s preview                 Ver qué haría el próximo ciclo
  %(prog)s tables                  Listar el catálogo de tablas
  %(prog)s extract mst_ledger      Extraer una tabla sin replicar
  %(prog)s checkpoint-info         Ver info del checkpoint
  %(prog)s reset-checkpoint        Resetear checkpoint
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Comando a ejecutar')

    sync_parser = subparsers.add_parser('sync', help='Ejecutar un ciclo de sincronización')
    sync_parser.add_argument('-v', '--verbose', action='store_true', help='Mostrar detalles de cada tabla')
    sync_parser.add_argument('--full', action='store_true', help='Forzar extracción completa')

    subparsers.add_parser('run', help='Ejecutar el scheduler periódico')
    subparsers.add_parser('test', help='Probar conexiones con Tally y el remote store')
    subparsers.add_parser('preview', help='Preview del próximo ciclo sin ejecutarlo')
    subparsers.add_parser('tables', help='Listar el catálogo de tablas')

    extract_parser = subparsers.add_parser('extract', help='Extraer una tabla sin replicar')
    extract_parser.add_argument('table', help='Nombre de la tabla (ej: mst_ledger)')
    extract_parser.add_argument('--limit', type=int, default=5, help='Registros de muestra a mostrar')

    subparsers.add_parser('checkpoint-info', help='Ver información del checkpoint')
    subparsers.add_parser('reset-checkpoint', help='Resetear checkpoint (forzar sync completa)')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'sync':
        return sync_once(verbose=args.verbose, full=args.full)
    elif args.command == 'run':
        return run_scheduler()
    elif args.command == 'test':
        return test_connections()
    elif args.command == 'preview':
        return preview_changes()
    elif args.command == 'tables':
        return list_tables()
    elif args.command == 'extract':
        return extract_table(args.table, args.limit)
    elif args.command == 'checkpoint-info':
        return checkpoint_info()
    elif args.command == 'reset-checkpoint':
        return reset_checkpoint()

    return 0


if __name__ == "__main__":
    sys.exit(main())
