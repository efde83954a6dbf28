"""Orchestrateur de scan: applique une règle au catalogue et enregistre les candidats.

Un scan passe PENDING -> RUNNING -> {COMPLETED, FAILED}. Les compteurs de
progression sont commités à chaque page du catalogue pour pouvoir suivre un
scan en cours.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence

import structlog
from sqlalchemy import or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from maintainarr.config import get_config
from maintainarr.core.criteria import CompiledCriteria, EvaluationResult, library_scope, parse_criteria
from maintainarr.core.errors import (
    ConflictError,
    RuleDisabledError,
    RuleNotFoundError,
    ScanAlreadyRunningError,
    ScanDeadlineExceeded,
    ScanNotFoundError,
)
from maintainarr.core.models import ACTIVE_SCAN_STATUSES, ActionType, MediaItem, MediaType, ReviewStatus, ScanStatus, utcnow
from maintainarr.core.review import AUTO_DELETE_REVIEWER, EnqueueDeletion, ReviewWorkflow
from maintainarr.core.schedule import next_occurrence
from maintainarr.db.models import MaintenanceCandidate, MaintenanceRule, MaintenanceScan

logger = structlog.get_logger(__name__)

# Marge laissée au scan lui-même avant que le reaper ne le déclare orphelin
REAPER_GRACE_SECONDS = 60

# Champs rafraîchis quand un candidat PENDING est re-signalé
REFRESHED_FIELDS = (
    "scan_id",
    "media_type",
    "radarr_id",
    "sonarr_id",
    "tmdb_id",
    "tvdb_id",
    "season_number",
    "episode_number",
    "title",
    "year",
    "poster",
    "file_path",
    "file_size",
    "play_count",
    "last_watched_at",
    "added_at",
    "rating",
    "matched_rules",
    "flagged_at",
    "updated_at",
)


class Catalog(Protocol):
    def list_media_items(
        self,
        media_type: MediaType,
        library_ids: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
    ) -> Iterator[List[MediaItem]]:
        ...


@dataclass
class ScanResult:
    scan_id: int
    status: ScanStatus
    items_scanned: int = 0
    items_flagged: int = 0
    error: Optional[str] = None
    auto_approved_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "status": self.status.value,
            "items_scanned": self.items_scanned,
            "items_flagged": self.items_flagged,
            "error": self.error,
            "auto_approved_ids": self.auto_approved_ids,
        }


def matched_rule_entry(rule: MaintenanceRule, evaluation: EvaluationResult) -> Dict[str, Any]:
    """Justification stockée dans ``matched_rules``."""
    return {
        "ruleId": rule.id,
        "ruleName": rule.name,
        "operator": evaluation.operator,
        "conditions": [result.to_dict() for result in evaluation.condition_results],
    }


class ScanOrchestrator:
    """Exécute une règle sur le catalogue Plex."""

    def __init__(
        self,
        db: Session,
        catalog: Catalog,
        enqueue_deletion: Optional[EnqueueDeletion] = None,
        deadline_seconds: Optional[float] = None,
        page_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = get_config()
        self.db = db
        self.catalog = catalog
        self.enqueue_deletion = enqueue_deletion
        self.deadline_seconds = deadline_seconds or config.maintenance.scan_deadline_seconds
        self.page_size = page_size or (config.plex.page_size if config.plex else 200)
        self.timezone = config.scheduler.timezone
        self.clock = clock

    def start_scan(self, rule_id: int) -> MaintenanceScan:
        """Crée un scan PENDING pour la règle (un seul scan actif par règle)."""
        rule = self.db.get(MaintenanceRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if not rule.enabled:
            raise RuleDisabledError(rule_id)

        active = (
            self.db.query(MaintenanceScan)
            .filter(MaintenanceScan.rule_id == rule_id, MaintenanceScan.status.in_(ACTIVE_SCAN_STATUSES))
            .first()
        )
        if active is not None:
            raise ScanAlreadyRunningError(rule_id, active.id)

        scan = MaintenanceScan(rule_id=rule_id, status=ScanStatus.PENDING)
        self.db.add(scan)
        try:
            self.db.commit()
        except IntegrityError:
            # Un autre déclenchement a gagné la course (index unique partiel)
            self.db.rollback()
            raise ScanAlreadyRunningError(rule_id)
        logger.info("scan_created", scan_id=scan.id, rule_id=rule_id)
        return scan

    def scan_rule(self, rule_id: int) -> ScanResult:
        """Crée puis exécute un scan (jobs planifiés)."""
        scan = self.start_scan(rule_id)
        return self.run_scan(scan.id)

    def run_scan(self, scan_id: int) -> ScanResult:
        scan = self.db.get(MaintenanceScan, scan_id)
        if scan is None:
            raise ScanNotFoundError(scan_id)
        if scan.status != ScanStatus.PENDING:
            raise ConflictError(f"Scan {scan_id} is {scan.status.value}, expected PENDING")

        rule = scan.rule
        scan.status = ScanStatus.RUNNING
        scan.started_at = utcnow()
        scan.items_scanned = 0
        scan.items_flagged = 0
        self.db.commit()
        log = logger.bind(scan_id=scan.id, rule_id=rule.id, media_type=rule.media_type.value)
        log.info("scan_started", rule_name=rule.name)

        started = self.clock()
        flagged_ids: List[int] = []
        try:
            compiled = CompiledCriteria.from_criteria(rule.criteria)
            library_ids = library_scope(parse_criteria(rule.criteria))
            now = utcnow()

            for page in self.catalog.list_media_items(rule.media_type, library_ids, self.page_size):
                for item in page:
                    if self.clock() - started > self.deadline_seconds:
                        raise ScanDeadlineExceeded(scan.id, self.deadline_seconds)
                    scan.items_scanned += 1
                    try:
                        evaluation = compiled.evaluate(item, now)
                    except Exception as e:
                        log.warning("item_evaluation_failed", plex_rating_key=item.plex_rating_key, error=str(e))
                        continue
                    if not evaluation.matches:
                        continue
                    candidate_id = self._upsert_candidate(scan, rule, item, evaluation)
                    if candidate_id is not None:
                        scan.items_flagged += 1
                        flagged_ids.append(candidate_id)
                    self.db.commit()
                self.db.commit()
                log.debug("scan_page_done", items_scanned=scan.items_scanned, items_flagged=scan.items_flagged)
        except Exception as e:
            return self._fail(scan.id, e, scan.items_scanned, scan.items_flagged)

        return self._complete(scan, rule, flagged_ids)

    def _upsert_candidate(
        self,
        scan: MaintenanceScan,
        rule: MaintenanceRule,
        item: MediaItem,
        evaluation: EvaluationResult,
    ) -> Optional[int]:
        """INSERT ... ON CONFLICT DO UPDATE WHERE review_status = PENDING.

        Renvoie l'id du candidat créé ou rafraîchi, None quand un candidat
        déjà revu est laissé intact.
        """
        now = utcnow()
        values = {
            "scan_id": scan.id,
            "rule_id": rule.id,
            "media_type": rule.media_type,
            "plex_rating_key": item.plex_rating_key,
            "radarr_id": item.radarr_id,
            "sonarr_id": item.sonarr_id,
            "tmdb_id": item.tmdb_id,
            "tvdb_id": item.tvdb_id,
            "season_number": item.season_number,
            "episode_number": item.episode_number,
            "title": item.title,
            "year": item.year,
            "poster": item.poster,
            "file_path": item.file_path,
            "file_size": item.file_size,
            "play_count": item.play_count or 0,
            "last_watched_at": item.last_watched_at,
            "added_at": item.added_at,
            "rating": item.rating,
            "matched_rules": [matched_rule_entry(rule, evaluation)],
            "flagged_at": now,
            "review_status": ReviewStatus.PENDING,
            "created_at": now,
            "updated_at": now,
        }
        statement = sqlite_insert(MaintenanceCandidate).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[MaintenanceCandidate.rule_id, MaintenanceCandidate.plex_rating_key],
            set_={name: statement.excluded[name] for name in REFRESHED_FIELDS},
            where=MaintenanceCandidate.review_status == ReviewStatus.PENDING,
        ).returning(MaintenanceCandidate.id)
        return self.db.execute(statement).scalar_one_or_none()

    def _complete(self, scan: MaintenanceScan, rule: MaintenanceRule, flagged_ids: List[int]) -> ScanResult:
        self.db.refresh(scan, ["status"])
        if scan.status != ScanStatus.RUNNING:
            # Marqué FAILED par le reaper pendant l'exécution
            logger.warning("scan_reaped_while_running", scan_id=scan.id)
            return self._result(scan)

        now = utcnow()
        scan.status = ScanStatus.COMPLETED
        scan.completed_at = now
        rule.last_run_at = now
        rule.next_run_at = next_occurrence(rule.schedule, now, self.timezone) if rule.schedule else None
        self.db.commit()
        logger.info(
            "scan_completed",
            scan_id=scan.id,
            rule_id=rule.id,
            items_scanned=scan.items_scanned,
            items_flagged=scan.items_flagged,
        )

        result = self._result(scan)
        if rule.action_type == ActionType.AUTO_DELETE and flagged_ids:
            workflow = ReviewWorkflow(self.db, self.enqueue_deletion)
            approval = workflow.bulk_approve(flagged_ids, AUTO_DELETE_REVIEWER)
            result.auto_approved_ids = approval.ids_with_status("ok")
            logger.info("scan_auto_approved", scan_id=scan.id, count=len(result.auto_approved_ids))
        return result

    def _fail(self, scan_id: int, error: Exception, items_scanned: int, items_flagged: int) -> ScanResult:
        self.db.rollback()
        message = str(error) or type(error).__name__
        scan = mark_scan_failed(self.db, scan_id, message, items_scanned, items_flagged)
        logger.error("scan_failed", scan_id=scan_id, error=message, error_type=type(error).__name__)
        return self._result(scan)

    @staticmethod
    def _result(scan: MaintenanceScan) -> ScanResult:
        return ScanResult(
            scan_id=scan.id,
            status=scan.status,
            items_scanned=scan.items_scanned,
            items_flagged=scan.items_flagged,
            error=scan.error,
        )


def reap_stale_scans(db: Session, deadline_seconds: float, now: Optional[datetime] = None) -> int:
    """Passe en FAILED les scans PENDING/RUNNING au-delà de leur échéance.

    Couvre les scans orphelins après un crash ou un redémarrage; renvoie leur nombre.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=deadline_seconds + REAPER_GRACE_SECONDS)
    stale = (
        db.query(MaintenanceScan)
        .filter(
            MaintenanceScan.status.in_(ACTIVE_SCAN_STATUSES),
            or_(
                MaintenanceScan.started_at < cutoff,
                (MaintenanceScan.started_at.is_(None)) & (MaintenanceScan.created_at < cutoff),
            ),
        )
        .all()
    )
    for scan in stale:
        scan.status = ScanStatus.FAILED
        scan.error = f"Scan did not finish within {deadline_seconds:g}s and was marked as failed"
        scan.completed_at = now
        logger.warning("scan_reaped", scan_id=scan.id, rule_id=scan.rule_id)
    if stale:
        db.commit()
    return len(stale)


def mark_scan_failed(
    db: Session,
    scan_id: int,
    message: str,
    items_scanned: Optional[int] = None,
    items_flagged: Optional[int] = None,
) -> MaintenanceScan:
    """Termine un scan en FAILED avec un message lisible."""
    scan = db.get(MaintenanceScan, scan_id, populate_existing=True)
    if scan is None:
        raise ScanNotFoundError(scan_id)
    if items_scanned is not None:
        scan.items_scanned = items_scanned
    if items_flagged is not None:
        scan.items_flagged = items_flagged
    scan.status = ScanStatus.FAILED
    scan.error = message
    scan.completed_at = utcnow()
    db.commit()
    return scan
