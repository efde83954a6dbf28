"""Gestion des règles de maintenance (CRUD)."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from maintainarr.config import get_config
from maintainarr.core.criteria import parse_criteria
from maintainarr.core.errors import ConflictError, RuleNotFoundError, RuleValidationError
from maintainarr.core.models import ACTIVE_SCAN_STATUSES, ActionType, MediaType, utcnow
from maintainarr.core.schedule import next_occurrence, validate_cron
from maintainarr.db.models import MaintenanceCandidate, MaintenanceRule, MaintenanceScan

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "enabled", "media_type", "criteria", "action_type", "schedule")


@dataclass
class RuleSummary:
    rule: MaintenanceRule
    latest_scan: Optional[MaintenanceScan]
    scan_count: int


def _clean_name(name: Optional[str]) -> str:
    if name is None or not name.strip():
        raise RuleValidationError("Rule name is required")
    return name.strip()


def _coerce_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise RuleValidationError(f"Invalid {field_name} '{value}' (expected one of: {allowed})")


def _refresh_next_run(rule: MaintenanceRule) -> None:
    if rule.enabled and rule.schedule:
        rule.next_run_at = next_occurrence(rule.schedule, utcnow(), get_config().scheduler.timezone)
    else:
        rule.next_run_at = None


def get_rule(db: Session, rule_id: int) -> MaintenanceRule:
    rule = db.get(MaintenanceRule, rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


def create_rule(db: Session, data: Dict[str, Any]) -> MaintenanceRule:
    """Crée une règle; critères et planification sont validés avant écriture."""
    criteria = parse_criteria(data.get("criteria"))
    rule = MaintenanceRule(
        name=_clean_name(data.get("name")),
        description=data.get("description"),
        enabled=data.get("enabled", True),
        media_type=_coerce_enum(MediaType, data.get("media_type"), "media_type"),
        criteria=criteria.to_json(),
        action_type=_coerce_enum(ActionType, data.get("action_type") or ActionType.FLAG_FOR_REVIEW, "action_type"),
        schedule=validate_cron(data.get("schedule"), get_config().scheduler.timezone),
    )
    _refresh_next_run(rule)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(f"Created maintenance rule {rule.id} ({rule.name})")
    return rule


def update_rule(db: Session, rule_id: int, changes: Dict[str, Any]) -> MaintenanceRule:
    """Mise à jour partielle; seules les clés présentes sont modifiées."""
    rule = get_rule(db, rule_id)
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise RuleValidationError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")

    if "name" in changes:
        rule.name = _clean_name(changes["name"])
    if "description" in changes:
        rule.description = changes["description"]
    if "enabled" in changes:
        if changes["enabled"] is None:
            raise RuleValidationError("enabled cannot be null")
        rule.enabled = bool(changes["enabled"])
    if "media_type" in changes:
        rule.media_type = _coerce_enum(MediaType, changes["media_type"], "media_type")
    if "criteria" in changes:
        rule.criteria = parse_criteria(changes["criteria"]).to_json()
    if "action_type" in changes:
        rule.action_type = _coerce_enum(ActionType, changes["action_type"], "action_type")
    if "schedule" in changes:
        rule.schedule = validate_cron(changes["schedule"], get_config().scheduler.timezone)

    _refresh_next_run(rule)
    rule.updated_at = utcnow()
    db.commit()
    db.refresh(rule)
    logger.info(f"Updated maintenance rule {rule.id} ({', '.join(sorted(changes)) or 'no changes'})")
    return rule


def delete_rule(db: Session, rule_id: int) -> Dict[str, int]:
    """Supprime une règle, ses candidats puis ses scans, dans cet ordre.

    L'historique des suppressions est conservé. Refusé tant qu'un scan de
    la règle est PENDING ou RUNNING.
    """
    rule = get_rule(db, rule_id)
    active = (
        db.query(MaintenanceScan.id)
        .filter(MaintenanceScan.rule_id == rule_id, MaintenanceScan.status.in_(ACTIVE_SCAN_STATUSES))
        .first()
    )
    if active is not None:
        raise ConflictError(f"Rule {rule_id} has a scan in progress (scan {active.id})")

    name = rule.name
    db.expunge(rule)
    candidates = (
        db.query(MaintenanceCandidate)
        .filter(MaintenanceCandidate.rule_id == rule_id)
        .delete(synchronize_session=False)
    )
    scans = db.query(MaintenanceScan).filter(MaintenanceScan.rule_id == rule_id).delete(synchronize_session=False)
    db.query(MaintenanceRule).filter(MaintenanceRule.id == rule_id).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Deleted maintenance rule {rule_id} ({name}): {scans} scans, {candidates} candidates")
    return {"rule_id": rule_id, "scans_deleted": scans, "candidates_deleted": candidates}


def list_rules(db: Session) -> List[RuleSummary]:
    """Toutes les règles avec leur dernier scan et leur nombre de scans."""
    rules = db.query(MaintenanceRule).order_by(MaintenanceRule.created_at.desc(), MaintenanceRule.id.desc()).all()
    counts = dict(
        db.query(MaintenanceScan.rule_id, func.count(MaintenanceScan.id))
        .group_by(MaintenanceScan.rule_id)
        .all()
    )
    return [
        RuleSummary(rule=rule, latest_scan=latest_scan(db, rule.id), scan_count=counts.get(rule.id, 0))
        for rule in rules
    ]


def latest_scan(db: Session, rule_id: int) -> Optional[MaintenanceScan]:
    return (
        db.query(MaintenanceScan)
        .filter(MaintenanceScan.rule_id == rule_id)
        .order_by(MaintenanceScan.created_at.desc(), MaintenanceScan.id.desc())
        .first()
    )
