"""Statistiques de maintenance, historique des suppressions et listes paginées."""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from maintainarr.core.models import MediaType, ReviewStatus, ScanStatus, utcnow
from maintainarr.db.models import MaintenanceCandidate, MaintenanceDeletionLog, MaintenanceRule, MaintenanceScan

T = TypeVar("T")

MAX_PAGE_SIZE = 200
RECENT_SCANS = 5


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


def paginate(query: Query, page: int = 1, page_size: int = 50) -> Page:
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return Page(items=items, total=total, page=page, page_size=page_size)


def get_maintenance_stats(db: Session) -> Dict[str, Any]:
    """Chiffres du tableau de bord de maintenance."""
    total_rules = db.query(func.count(MaintenanceRule.id)).scalar() or 0
    enabled_rules = (
        db.query(func.count(MaintenanceRule.id)).filter(MaintenanceRule.enabled == True).scalar() or 0  # noqa: E712
    )

    by_status = dict(
        db.query(MaintenanceCandidate.review_status, func.count(MaintenanceCandidate.id))
        .group_by(MaintenanceCandidate.review_status)
        .all()
    )
    candidates = {status.value: by_status.get(status, 0) for status in ReviewStatus}

    potential_savings = (
        db.query(func.coalesce(func.sum(MaintenanceCandidate.file_size), 0))
        .filter(MaintenanceCandidate.review_status.in_((ReviewStatus.PENDING, ReviewStatus.APPROVED)))
        .scalar()
    )

    recent_scans = (
        db.query(MaintenanceScan)
        .filter(MaintenanceScan.status == ScanStatus.COMPLETED)
        .order_by(MaintenanceScan.completed_at.desc(), MaintenanceScan.id.desc())
        .limit(RECENT_SCANS)
        .all()
    )

    return {
        "rules": {
            "total": total_rules,
            "enabled": enabled_rules,
            "disabled": total_rules - enabled_rules,
        },
        "candidates": candidates,
        "total_deletions": db.query(func.count(MaintenanceDeletionLog.id)).scalar() or 0,
        "potential_space_savings_bytes": int(potential_savings or 0),
        "recent_scans": [
            {
                "id": scan.id,
                "rule_id": scan.rule_id,
                "rule_name": scan.rule.name if scan.rule else None,
                "items_scanned": scan.items_scanned,
                "items_flagged": scan.items_flagged,
                "completed_at": scan.completed_at.isoformat() if scan.completed_at else None,
            }
            for scan in recent_scans
        ],
    }


def list_deletion_history(
    db: Session,
    media_type: Optional[MediaType] = None,
    deleted_by: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> Page:
    """Historique des suppressions, plus récentes d'abord."""
    query = db.query(MaintenanceDeletionLog)
    if media_type is not None:
        query = query.filter(MaintenanceDeletionLog.media_type == MediaType(media_type))
    if deleted_by:
        query = query.filter(MaintenanceDeletionLog.deleted_by == deleted_by)
    query = query.order_by(MaintenanceDeletionLog.deleted_at.desc(), MaintenanceDeletionLog.id.desc())
    return paginate(query, page, page_size)


def list_candidates(
    db: Session,
    review_status: Optional[ReviewStatus] = None,
    media_type: Optional[MediaType] = None,
    scan_id: Optional[int] = None,
    rule_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 50,
) -> Page:
    """Candidats filtrés, derniers signalés d'abord."""
    query = db.query(MaintenanceCandidate)
    if review_status is not None:
        query = query.filter(MaintenanceCandidate.review_status == ReviewStatus(review_status))
    if media_type is not None:
        query = query.filter(MaintenanceCandidate.media_type == MediaType(media_type))
    if scan_id is not None:
        query = query.filter(MaintenanceCandidate.scan_id == scan_id)
    if rule_id is not None:
        query = query.filter(MaintenanceCandidate.rule_id == rule_id)
    query = query.order_by(MaintenanceCandidate.flagged_at.desc(), MaintenanceCandidate.id.desc())
    return paginate(query, page, page_size)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def get_deletion_stats(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Bilan des suppressions, éventuellement borné par ``start``/``end`` (inclus).

    ``files_deleted`` distingue les suppressions de fichiers réelles des
    simples retraits de Radarr/Sonarr.
    """
    start, end = _naive_utc(start), _naive_utc(end)
    if start is not None and end is not None and start > end:
        raise ValueError("start must not be after end")
    now = _naive_utc(now) or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def scoped(query: Query) -> Query:
        if start is not None:
            query = query.filter(MaintenanceDeletionLog.deleted_at >= start)
        if end is not None:
            query = query.filter(MaintenanceDeletionLog.deleted_at <= end)
        return query

    total = scoped(db.query(func.count(MaintenanceDeletionLog.id))).scalar() or 0
    space = scoped(db.query(func.coalesce(func.sum(MaintenanceDeletionLog.file_size), 0))).scalar()
    files_deleted = (
        scoped(db.query(func.count(MaintenanceDeletionLog.id)))
        .filter(MaintenanceDeletionLog.files_deleted == True)  # noqa: E712
        .scalar() or 0
    )
    this_month = (
        scoped(db.query(func.count(MaintenanceDeletionLog.id)))
        .filter(MaintenanceDeletionLog.deleted_at >= month_start)
        .scalar() or 0
    )
    by_media_type = (
        scoped(db.query(MaintenanceDeletionLog.media_type, func.count(MaintenanceDeletionLog.id)))
        .group_by(MaintenanceDeletionLog.media_type)
        .all()
    )
    by_deleted_by = (
        scoped(db.query(MaintenanceDeletionLog.deleted_by, func.count(MaintenanceDeletionLog.id)))
        .group_by(MaintenanceDeletionLog.deleted_by)
        .order_by(func.count(MaintenanceDeletionLog.id).desc(), MaintenanceDeletionLog.deleted_by)
        .all()
    )

    return {
        "total_deletions": total,
        "total_space_reclaimed_bytes": int(space or 0),
        "files_actually_deleted": files_deleted,
        "deletions_this_month": this_month,
        "by_media_type": [
            {"media_type": media_type.value, "count": count}
            for media_type, count in sorted(by_media_type, key=lambda row: row[0].value)
        ],
        "by_deleted_by": [
            {"deleted_by": deleted_by, "count": count} for deleted_by, count in by_deleted_by
        ],
    }
