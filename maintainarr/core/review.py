"""Revue des candidats: approbation / rejet, unitaire et en masse.

Les transitions passent par un UPDATE conditionnel sur
``review_status = 'PENDING'``; le nombre de lignes modifiées dit si cet appel
a gagné.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from maintainarr.core.errors import CandidateNotFoundError, InvalidTransitionError
from maintainarr.core.models import ActionType, ReviewStatus, utcnow
from maintainarr.db.models import MaintenanceCandidate

logger = logging.getLogger(__name__)

AUTO_DELETE_REVIEWER = "auto-delete"

# Reçoit les IDs de candidats approuvés à supprimer
EnqueueDeletion = Callable[[List[int]], None]


@dataclass
class ReviewOutcome:
    candidate_id: int
    status: str  # ok, not_found, conflict, error
    review_status: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "candidate_id": self.candidate_id,
            "status": self.status,
            "review_status": self.review_status,
            "message": self.message,
        }


@dataclass
class BulkReviewResult:
    outcomes: List[ReviewOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "ok")

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    def ids_with_status(self, status: str) -> List[int]:
        return [o.candidate_id for o in self.outcomes if o.status == status]


class ReviewWorkflow:
    """Applique les décisions de revue d'un admin."""

    def __init__(self, db: Session, enqueue_deletion: Optional[EnqueueDeletion] = None):
        self.db = db
        self.enqueue_deletion = enqueue_deletion

    def approve(self, candidate_id: int, reviewer: str, note: Optional[str] = None) -> MaintenanceCandidate:
        """PENDING -> APPROVED; enqueue la suppression si la règle est AUTO_DELETE."""
        candidate = self._transition(candidate_id, ReviewStatus.APPROVED, reviewer, note, "approve")
        if self._is_auto_delete(candidate):
            self._enqueue([candidate.id])
        return candidate

    def reject(self, candidate_id: int, reviewer: str, note: Optional[str] = None) -> MaintenanceCandidate:
        """PENDING -> REJECTED (terminal)."""
        return self._transition(candidate_id, ReviewStatus.REJECTED, reviewer, note, "reject")

    def bulk_approve(self, candidate_ids: Iterable[int], reviewer: str, note: Optional[str] = None) -> BulkReviewResult:
        result = BulkReviewResult()
        to_delete: List[int] = []
        for candidate_id in dict.fromkeys(candidate_ids):
            candidate = self._apply_one(result, candidate_id, ReviewStatus.APPROVED, reviewer, note, "approve")
            if candidate is not None and self._is_auto_delete(candidate):
                to_delete.append(candidate.id)
        if to_delete:
            self._enqueue(to_delete)
        logger.info(f"Bulk approve by {reviewer}: {result.succeeded} ok, {result.failed} failed")
        return result

    def bulk_reject(self, candidate_ids: Iterable[int], reviewer: str, note: Optional[str] = None) -> BulkReviewResult:
        result = BulkReviewResult()
        for candidate_id in dict.fromkeys(candidate_ids):
            self._apply_one(result, candidate_id, ReviewStatus.REJECTED, reviewer, note, "reject")
        logger.info(f"Bulk reject by {reviewer}: {result.succeeded} ok, {result.failed} failed")
        return result

    def _apply_one(
        self,
        result: BulkReviewResult,
        candidate_id: int,
        target: ReviewStatus,
        reviewer: str,
        note: Optional[str],
        action: str,
    ) -> Optional[MaintenanceCandidate]:
        try:
            candidate = self._transition(candidate_id, target, reviewer, note, action)
        except CandidateNotFoundError as e:
            result.outcomes.append(ReviewOutcome(candidate_id, "not_found", message=str(e)))
        except InvalidTransitionError as e:
            result.outcomes.append(
                ReviewOutcome(candidate_id, "conflict", review_status=e.current_status, message=str(e))
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error during {action} of candidate {candidate_id}: {str(e)}")
            result.outcomes.append(ReviewOutcome(candidate_id, "error", message=str(e)))
        else:
            result.outcomes.append(ReviewOutcome(candidate_id, "ok", review_status=candidate.review_status.value))
            return candidate
        return None

    def _transition(
        self,
        candidate_id: int,
        target: ReviewStatus,
        reviewer: str,
        note: Optional[str],
        action: str,
    ) -> MaintenanceCandidate:
        now = utcnow()
        statement = (
            update(MaintenanceCandidate)
            .where(
                MaintenanceCandidate.id == candidate_id,
                MaintenanceCandidate.review_status == ReviewStatus.PENDING,
            )
            .values(
                review_status=target,
                reviewed_at=now,
                reviewed_by=reviewer,
                review_note=note,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        rowcount = self.db.execute(statement).rowcount
        self.db.commit()

        candidate = self.db.get(MaintenanceCandidate, candidate_id, populate_existing=True)
        if candidate is None:
            raise CandidateNotFoundError(candidate_id)
        if rowcount == 0:
            raise InvalidTransitionError(candidate_id, candidate.review_status.value, action)
        return candidate

    @staticmethod
    def _is_auto_delete(candidate: MaintenanceCandidate) -> bool:
        return candidate.rule is not None and candidate.rule.action_type == ActionType.AUTO_DELETE

    def _enqueue(self, candidate_ids: List[int]) -> None:
        if self.enqueue_deletion is None:
            logger.warning(f"No deletion queue configured, {len(candidate_ids)} approved candidates left APPROVED")
            return
        self.enqueue_deletion(candidate_ids)
