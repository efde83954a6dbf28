"""Planification cron des règles (CronTrigger d'APScheduler)."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from maintainarr.core.errors import RuleValidationError


def cron_trigger(cron_expr: str, tz: str = "UTC") -> CronTrigger:
    """Construit le trigger d'une expression cron à 5 champs."""
    try:
        return CronTrigger.from_crontab(cron_expr.strip(), timezone=tz)
    except (ValueError, TypeError) as e:
        raise RuleValidationError(f"Invalid cron schedule '{cron_expr}': {str(e)}") from e


def validate_cron(cron_expr: Optional[str], tz: str = "UTC") -> Optional[str]:
    """Normalise une planification: vide = aucune, sinon l'expression doit être valide."""
    if cron_expr is None or not cron_expr.strip():
        return None
    cron_trigger(cron_expr, tz)
    return cron_expr.strip()


def next_occurrence(cron_expr: str, from_time: datetime, tz: str = "UTC") -> Optional[datetime]:
    """Prochaine exécution strictement après ``from_time``.

    Les datetimes naïfs sont en UTC, en entrée comme en sortie (format de la base).
    """
    trigger = cron_trigger(cron_expr, tz)
    if from_time.tzinfo is None:
        from_time = from_time.replace(tzinfo=timezone.utc)
    # get_next_fire_time peut renvoyer "now" si on tombe pile sur une échéance
    fire_time = trigger.get_next_fire_time(None, from_time + timedelta(microseconds=1))
    if fire_time is None:
        return None
    return fire_time.astimezone(timezone.utc).replace(tzinfo=None)
