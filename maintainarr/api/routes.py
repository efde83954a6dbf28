"""API routes."""
import logging
from datetime import datetime
from itertools import islice
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from maintainarr.api.models import (
    BulkReviewRequest,
    BulkReviewResponse,
    CandidatePage,
    CandidateResponse,
    DeleteRequest,
    DeletionLogPage,
    DeletionLogResponse,
    DeletionResponse,
    DeletionStatsResponse,
    DiagnosticsResponse,
    PreviewRequest,
    PreviewResponse,
    PreviewResult,
    ReviewOutcomeResponse,
    ReviewRequest,
    RuleCreate,
    RuleDeleteResponse,
    RuleResponse,
    RuleUpdate,
    ScanResponse,
    ScanTriggerResponse,
)
from maintainarr.config import get_config
from maintainarr.core import rules as rules_core
from maintainarr.core.criteria import CompiledCriteria, field_registry, library_scope, parse_criteria
from maintainarr.core.deleter import DeletionExecutor
from maintainarr.core.errors import CandidateNotFoundError, ScanNotFoundError
from maintainarr.core.models import MediaItem, MediaType, ReviewStatus
from maintainarr.core.review import BulkReviewResult, ReviewWorkflow
from maintainarr.core.scanner import ScanOrchestrator
from maintainarr.core.stats import get_deletion_stats, get_maintenance_stats, list_candidates, list_deletion_history
from maintainarr.db.database import get_db
from maintainarr.db.models import MaintenanceCandidate, MaintenanceRule, MaintenanceScan
from maintainarr import jobs
from maintainarr import scheduler
from maintainarr.services.plex import PlexService
from maintainarr.services.radarr import RadarrService
from maintainarr.services.sonarr import SonarrService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def _rule_response(rule: MaintenanceRule, latest_scan: Optional[MaintenanceScan] = None, scan_count: int = 0) -> RuleResponse:
    response = RuleResponse.model_validate(rule)
    response.latest_scan = ScanResponse.model_validate(latest_scan) if latest_scan else None
    response.scan_count = scan_count
    return response


def _bulk_response(result: BulkReviewResult) -> BulkReviewResponse:
    return BulkReviewResponse(
        succeeded=result.succeeded,
        failed=result.failed,
        results=[ReviewOutcomeResponse(**outcome.to_dict()) for outcome in result.outcomes],
    )


def _deletion_queue(background_tasks: BackgroundTasks, deleted_by: str):
    """Les suppressions déclenchées par une approbation tournent après la réponse."""
    def enqueue(candidate_ids: List[int]) -> None:
        background_tasks.add_task(jobs.run_deletion_job, candidate_ids, deleted_by)
    return enqueue


# --- Rules ----------------------------------------------------------------


@router.get("/rules/fields")
async def get_rule_fields():
    """Champs et opérateurs disponibles pour construire une règle."""
    return {"fields": field_registry()}


@router.post("/rules/preview", response_model=PreviewResponse)
def preview_rule(request: PreviewRequest):
    """Évalue des critères sur des items fournis ou un échantillon du catalogue."""
    compiled = CompiledCriteria.from_criteria(request.criteria)
    if request.items is not None:
        items: List[MediaItem] = [item.to_media_item() for item in request.items[:request.limit]]
    else:
        library_ids = library_scope(parse_criteria(request.criteria))
        try:
            catalog = jobs.get_catalog()
        except ValueError as e:
            raise HTTPException(status_code=503, detail=f"{str(e)}; pass items explicitly to preview")
        pages = catalog.list_media_items(request.media_type, library_ids, request.limit)
        items = list(islice((item for page in pages for item in page), request.limit))

    results = []
    for item in items:
        evaluation = compiled.evaluate(item)
        results.append(PreviewResult(
            plex_rating_key=item.plex_rating_key,
            title=item.title,
            matches=evaluation.matches,
            conditions=[condition.to_dict() for condition in evaluation.condition_results],
        ))
    return PreviewResponse(
        operator=compiled.operator,
        evaluated=len(results),
        matched=sum(1 for r in results if r.matches),
        results=results,
    )


@router.post("/rules", response_model=RuleResponse, status_code=201)
async def create_rule(request: RuleCreate, db: Session = Depends(get_db)):
    """Crée une règle de maintenance."""
    rule = rules_core.create_rule(db, request.model_dump())
    scheduler.sync_rule_schedule(rule)
    return _rule_response(rule)


@router.get("/rules", response_model=List[RuleResponse])
async def list_rules(db: Session = Depends(get_db)):
    """Liste les règles avec leur dernier scan."""
    return [
        _rule_response(summary.rule, summary.latest_scan, summary.scan_count)
        for summary in rules_core.list_rules(db)
    ]


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int, db: Session = Depends(get_db)):
    rule = rules_core.get_rule(db, rule_id)
    scan_count = db.query(MaintenanceScan).filter(MaintenanceScan.rule_id == rule_id).count()
    return _rule_response(rule, rules_core.latest_scan(db, rule_id), scan_count)


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: int, request: RuleUpdate, db: Session = Depends(get_db)):
    """Mise à jour partielle d'une règle."""
    rule = rules_core.update_rule(db, rule_id, request.model_dump(exclude_unset=True))
    scheduler.sync_rule_schedule(rule)
    return _rule_response(rule, rules_core.latest_scan(db, rule_id))


@router.delete("/rules/{rule_id}", response_model=RuleDeleteResponse)
async def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    """Supprime une règle avec ses scans et candidats."""
    result = rules_core.delete_rule(db, rule_id)
    scheduler.remove_rule_schedule(rule_id)
    return RuleDeleteResponse(**result)


# --- Scans ----------------------------------------------------------------


@router.post("/rules/{rule_id}/scan", response_model=ScanTriggerResponse, status_code=202)
async def trigger_scan(rule_id: int, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Lance un scan manuel; le scan tourne en tâche de fond."""
    scan = ScanOrchestrator(db, catalog=None).start_scan(rule_id)
    background_tasks.add_task(jobs.run_scan_job, scan.id)
    logger.info(f"Manual scan {scan.id} queued for rule {rule_id}")
    return ScanTriggerResponse(scan_id=scan.id, status=scan.status, message="Scan started")


@router.get("/scans/{scan_id}", response_model=ScanResponse)
async def get_scan(scan_id: int, db: Session = Depends(get_db)):
    """Statut et progression d'un scan."""
    scan = db.get(MaintenanceScan, scan_id)
    if scan is None:
        raise ScanNotFoundError(scan_id)
    return ScanResponse.model_validate(scan)


# --- Candidates -----------------------------------------------------------


@router.get("/candidates", response_model=CandidatePage)
async def get_candidates(
    review_status: Optional[ReviewStatus] = None,
    media_type: Optional[MediaType] = None,
    scan_id: Optional[int] = None,
    rule_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    result = list_candidates(db, review_status, media_type, scan_id, rule_id, page, page_size)
    return CandidatePage(
        items=[CandidateResponse.model_validate(c) for c in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_next=result.has_next,
    )


@router.get("/candidates/{candidate_id}", response_model=CandidateResponse)
async def get_candidate(candidate_id: int, db: Session = Depends(get_db)):
    candidate = db.get(MaintenanceCandidate, candidate_id)
    if candidate is None:
        raise CandidateNotFoundError(candidate_id)
    return CandidateResponse.model_validate(candidate)


@router.post("/candidates/bulk-approve", response_model=BulkReviewResponse)
async def bulk_approve(request: BulkReviewRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    workflow = ReviewWorkflow(db, _deletion_queue(background_tasks, request.reviewer))
    return _bulk_response(workflow.bulk_approve(request.candidate_ids, request.reviewer, request.note))


@router.post("/candidates/bulk-reject", response_model=BulkReviewResponse)
async def bulk_reject(request: BulkReviewRequest, db: Session = Depends(get_db)):
    workflow = ReviewWorkflow(db)
    return _bulk_response(workflow.bulk_reject(request.candidate_ids, request.reviewer, request.note))


@router.post("/candidates/delete", response_model=DeletionResponse)
async def delete_candidates(request: DeleteRequest, db: Session = Depends(get_db)):
    """Supprime des candidats APPROVED dans Radarr/Sonarr."""
    executor = DeletionExecutor(db)
    result = await executor.execute(
        request.candidate_ids,
        request.deleted_by,
        delete_files=request.delete_files,
        add_exclusion=request.add_exclusion,
    )
    return DeletionResponse(**result.to_dict())


@router.post("/candidates/{candidate_id}/approve", response_model=CandidateResponse)
async def approve_candidate(
    candidate_id: int,
    background_tasks: BackgroundTasks,
    request: ReviewRequest = ReviewRequest(),
    db: Session = Depends(get_db),
):
    workflow = ReviewWorkflow(db, _deletion_queue(background_tasks, request.reviewer))
    return CandidateResponse.model_validate(workflow.approve(candidate_id, request.reviewer, request.note))


@router.post("/candidates/{candidate_id}/reject", response_model=CandidateResponse)
async def reject_candidate(candidate_id: int, request: ReviewRequest = ReviewRequest(), db: Session = Depends(get_db)):
    workflow = ReviewWorkflow(db)
    return CandidateResponse.model_validate(workflow.reject(candidate_id, request.reviewer, request.note))


# --- Stats & history ------------------------------------------------------


@router.get("/stats")
async def get_stats(db: Session = Depends(get_db)):
    """Statistiques du tableau de bord."""
    return get_maintenance_stats(db)


@router.get("/deletions/stats", response_model=DeletionStatsResponse)
async def get_deletions_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Bilan des suppressions (espace récupéré, par type, par auteur)."""
    try:
        return get_deletion_stats(db, start, end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/deletions", response_model=DeletionLogPage)
async def get_deletions(
    media_type: Optional[MediaType] = None,
    deleted_by: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """Historique des suppressions."""
    result = list_deletion_history(db, media_type, deleted_by, page, page_size)
    return DeletionLogPage(
        items=[DeletionLogResponse.model_validate(log) for log in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_next=result.has_next,
    )


# --- Diagnostics & config -------------------------------------------------


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics():
    """Vérifie les connexions aux APIs."""
    config = get_config()
    results = {
        "plex": {"configured": bool(config.plex), "connected": False, "error": None},
        "radarr": {"configured": bool(config.radarr), "connected": False, "error": None},
        "sonarr": {"configured": bool(config.sonarr), "connected": False, "error": None},
    }

    # Test Plex
    if config.plex:
        try:
            PlexService()._get_server()
            results["plex"]["connected"] = True
        except Exception as e:
            results["plex"]["error"] = str(e)

    # Test Radarr
    if config.radarr:
        try:
            await RadarrService().system_status()
            results["radarr"]["connected"] = True
        except Exception as e:
            results["radarr"]["error"] = str(e)

    # Test Sonarr
    if config.sonarr:
        try:
            await SonarrService().system_status()
            results["sonarr"]["connected"] = True
        except Exception as e:
            results["sonarr"]["error"] = str(e)

    return DiagnosticsResponse(**results)


@router.get("/config")
async def get_config_endpoint():
    """Récupère la configuration actuelle (sans secrets)."""
    config = get_config()
    return {
        "plex": {"url": config.plex.url, "page_size": config.plex.page_size} if config.plex else None,
        "radarr": config.radarr.model_dump(exclude={"api_key"}) if config.radarr else None,
        "sonarr": config.sonarr.model_dump(exclude={"api_key"}) if config.sonarr else None,
        "maintenance": config.maintenance.model_dump(),
        "scheduler": config.scheduler.model_dump(),
        "app": config.app.model_dump(),
    }
