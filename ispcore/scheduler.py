"""
ISPCore - Tareas programadas
Corre el barrido del reconciliador cada RECONCILE_INTERVAL_SECONDS
dentro del loop de la aplicación.
"""
import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ispcore.config import Settings
from ispcore.services.reconciler import Reconciler

logger = logging.getLogger("scheduler")


def job_listener(event):
    """Log de cada ejecución de job."""
    if event.exception:
        logger.error(f"Job {event.job_id} falló: {event.exception}")
    else:
        logger.info(f"Job {event.job_id} ejecutado exitosamente")


async def run_reconcile_cycle(reconciler: Reconciler) -> None:
    reports = await reconciler.sweep()
    orphans = sum(len(r.orphans) for r in reports)
    ghosts = sum(len(r.ghosts) for r in reports)
    failed = sum(1 for r in reports if r.error)
    logger.info(
        f"Reconciliación terminada: {len(reports)} equipo(s), "
        f"{orphans} huérfano(s), {ghosts} fantasma(s), {failed} con error"
    )


def build_scheduler(settings: Settings, reconciler: Reconciler) -> Optional[AsyncIOScheduler]:
    if not settings.RECONCILER_ENABLED:
        logger.info("Reconciliador deshabilitado (RECONCILER_ENABLED=false)")
        return None

    scheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        }
    )
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    logger.info(f"Programando reconciliación cada {settings.RECONCILE_INTERVAL_SECONDS} segundos")
    scheduler.add_job(
        run_reconcile_cycle,
        trigger=IntervalTrigger(seconds=settings.RECONCILE_INTERVAL_SECONDS),
        args=[reconciler],
        id="reconcile_job",
        name="MikroTik Reconciler",
        replace_existing=True,
    )
    return scheduler
