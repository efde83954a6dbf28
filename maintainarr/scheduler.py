"""Scheduler pour les scans planifiés des règles."""
import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from maintainarr.config import get_config
from maintainarr.core.schedule import cron_trigger
from maintainarr.db.database import session_scope
from maintainarr.db.models import MaintenanceRule
from maintainarr.jobs import reap_stale_scans_job, scheduled_scan_job

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

REAPER_JOB_ID = "reap_stale_scans"


def rule_job_id(rule_id: int) -> str:
    return f"maintenance_rule_{rule_id}"


def start_scheduler() -> Optional[AsyncIOScheduler]:
    """Démarre le scheduler si configuré et enregistre les règles planifiées."""
    global scheduler
    config = get_config()

    if not config.scheduler.enabled:
        logger.info("Scheduler is disabled")
        return None

    timezone_name = config.scheduler.timezone
    scheduler = AsyncIOScheduler(timezone=timezone_name)

    # Reaper: au démarrage puis à intervalle régulier
    scheduler.add_job(
        reap_stale_scans_job,
        trigger=IntervalTrigger(minutes=config.scheduler.reaper_interval_minutes),
        id=REAPER_JOB_ID,
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()

    with session_scope() as db:
        rules = (
            db.query(MaintenanceRule)
            .filter(MaintenanceRule.enabled == True, MaintenanceRule.schedule.isnot(None))  # noqa: E712
            .all()
        )
        for rule in rules:
            sync_rule_schedule(rule)

    logger.info(f"Scheduler started with {len(rules)} scheduled rule(s), timezone: {timezone_name}")
    return scheduler


def sync_rule_schedule(rule: MaintenanceRule) -> None:
    """Ajoute, remplace ou retire le job cron d'une règle."""
    if scheduler is None:
        return
    if not rule.enabled or not rule.schedule:
        remove_rule_schedule(rule.id)
        return
    try:
        trigger = cron_trigger(rule.schedule, get_config().scheduler.timezone)
    except ValueError as e:
        logger.error(f"Not scheduling rule {rule.id}: {str(e)}")
        remove_rule_schedule(rule.id)
        return
    scheduler.add_job(
        scheduled_scan_job,
        trigger=trigger,
        args=[rule.id],
        id=rule_job_id(rule.id),
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled rule {rule.id} ({rule.name}) with cron '{rule.schedule}'")


def remove_rule_schedule(rule_id: int) -> None:
    if scheduler is None:
        return
    try:
        scheduler.remove_job(rule_job_id(rule_id))
        logger.info(f"Unscheduled rule {rule_id}")
    except JobLookupError:
        pass


def stop_scheduler():
    """Arrête le scheduler."""
    global scheduler
    if scheduler:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
