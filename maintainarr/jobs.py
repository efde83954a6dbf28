"""Jobs de fond: scans et suppressions hors du cycle des requêtes."""
import asyncio
import logging
from typing import List, Optional, Sequence

from maintainarr.config import get_config
from maintainarr.core.deleter import DeletionExecutor, DeletionResult
from maintainarr.core.errors import ConflictError, MaintenanceError
from maintainarr.core.review import AUTO_DELETE_REVIEWER
from maintainarr.core.scanner import ScanOrchestrator, ScanResult, mark_scan_failed, reap_stale_scans
from maintainarr.db.database import session_scope
from maintainarr.services.plex import PlexService

logger = logging.getLogger(__name__)


def get_catalog() -> PlexService:
    """Catalogue utilisé par les scans."""
    return PlexService()


async def run_deletion_job(
    candidate_ids: Sequence[int],
    deleted_by: str,
    delete_files: Optional[bool] = None,
    add_exclusion: Optional[bool] = None,
) -> DeletionResult:
    """Supprime des candidats APPROVED (tâche de fond)."""
    with session_scope() as db:
        result = await DeletionExecutor(db).execute(candidate_ids, deleted_by, delete_files, add_exclusion)
    logger.info(f"Deletion job by {deleted_by}: {result.success} deleted, {result.failed} failed")
    return result


def run_deletions_now(candidate_ids: List[int]) -> None:
    """File de suppression des threads de scan: exécute le lot jusqu'au bout."""
    asyncio.run(run_deletion_job(candidate_ids, AUTO_DELETE_REVIEWER))


def run_scan_job(scan_id: int) -> Optional[ScanResult]:
    """Exécute un scan PENDING créé par l'API."""
    with session_scope() as db:
        try:
            catalog = get_catalog()
        except ValueError as e:
            mark_scan_failed(db, scan_id, f"Catalog unavailable: {str(e)}")
            logger.error(f"Scan {scan_id} failed: {str(e)}")
            return None
        try:
            result = ScanOrchestrator(db, catalog, enqueue_deletion=run_deletions_now).run_scan(scan_id)
        except MaintenanceError as e:
            logger.error(f"Scan {scan_id} could not run: {str(e)}")
            return None
    logger.info(
        f"Scan {scan_id} finished with status {result.status.value}: "
        f"{result.items_scanned} scanned, {result.items_flagged} flagged"
    )
    return result


def scheduled_scan_job(rule_id: int) -> Optional[ScanResult]:
    """Scan planifié d'une règle (job APScheduler)."""
    logger.info(f"Running scheduled scan for rule {rule_id}")
    try:
        with session_scope() as db:
            return ScanOrchestrator(db, get_catalog(), enqueue_deletion=run_deletions_now).scan_rule(rule_id)
    except ConflictError as e:
        logger.info(f"Skipping scheduled scan: {str(e)}")
    except Exception as e:
        logger.error(f"Error in scheduled scan for rule {rule_id}: {str(e)}")
    return None


def reap_stale_scans_job() -> int:
    """Marque en FAILED les scans orphelins (crash, redémarrage)."""
    with session_scope() as db:
        reaped = reap_stale_scans(db, get_config().maintenance.scan_deadline_seconds)
    if reaped:
        logger.warning(f"Marked {reaped} stale scan(s) as FAILED")
    return reaped
