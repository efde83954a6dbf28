"""Exécuteur des suppressions approuvées (Radarr / Sonarr)."""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
import structlog
from sqlalchemy.orm import Session

from maintainarr.config import get_config
from maintainarr.core.errors import MaintenanceError, UnresolvedTargetError
from maintainarr.core.models import MediaType, ReviewStatus, utcnow
from maintainarr.db.models import MaintenanceCandidate, MaintenanceDeletionLog
from maintainarr.services.radarr import RadarrService
from maintainarr.services.sonarr import SonarrService

logger = structlog.get_logger(__name__)

MOVIE = "movie"
SERIES = "series"
EPISODE = "episode"

TARGET_KINDS = {
    MediaType.MOVIE: MOVIE,
    MediaType.TV_SERIES: SERIES,
    MediaType.EPISODE: EPISODE,
}


@dataclass
class DeletionResult:
    success: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def add_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "failed": self.failed, "errors": self.errors}


@dataclass
class _Target:
    """Un candidat en cours de suppression."""
    candidate: MaintenanceCandidate
    kind: str
    external_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def deleted_from(self) -> str:
        return "Radarr" if self.kind == MOVIE else "Sonarr"


class DeletionExecutor:
    """Supprime les candidats APPROVED via Radarr/Sonarr.

    Chaque candidat réussit ou échoue seul: un appel lent ou en erreur
    n'interrompt jamais le lot, et la base est mise à jour une fois tous les
    appels terminés.
    """

    def __init__(
        self,
        db: Session,
        radarr: Optional[RadarrService] = None,
        sonarr: Optional[SonarrService] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        use_bulk: Optional[bool] = None,
    ):
        config = get_config()
        self.db = db
        self.radarr = radarr if radarr is not None else (RadarrService() if config.radarr else None)
        self.sonarr = sonarr if sonarr is not None else (SonarrService() if config.sonarr else None)
        self.concurrency = concurrency or config.maintenance.deletion_concurrency
        self.timeout = timeout or config.maintenance.request_timeout_seconds
        self.use_bulk = config.maintenance.use_bulk_delete if use_bulk is None else use_bulk
        self.default_delete_files = config.maintenance.delete_files

    async def execute(
        self,
        candidate_ids: Sequence[int],
        deleted_by: str,
        delete_files: Optional[bool] = None,
        add_exclusion: Optional[bool] = None,
    ) -> DeletionResult:
        if delete_files is None:
            delete_files = self.default_delete_files
        result = DeletionResult()
        ids = list(dict.fromkeys(candidate_ids))
        if not ids:
            return result

        candidates = {
            c.id: c
            for c in self.db.query(MaintenanceCandidate).filter(MaintenanceCandidate.id.in_(ids)).all()
        }

        targets: List[_Target] = []
        for candidate_id in ids:
            candidate = candidates.get(candidate_id)
            if candidate is None:
                result.add_failure(f"Candidate {candidate_id}: not found")
            elif candidate.review_status == ReviewStatus.DELETED:
                # Déjà supprimé: succès sans effet
                result.success += 1
            elif candidate.review_status != ReviewStatus.APPROVED:
                result.add_failure(
                    f"{candidate.title}: status is {candidate.review_status.value}, only APPROVED candidates can be deleted"
                )
            else:
                targets.append(_Target(candidate=candidate, kind=TARGET_KINDS[candidate.media_type]))

        if not targets:
            return result

        logger.info("deletion_started", candidates=len(targets), deleted_by=deleted_by, delete_files=delete_files)
        semaphore = asyncio.Semaphore(self.concurrency)

        # 1. Résolution des IDs Radarr/Sonarr
        await asyncio.gather(*(self._guarded(semaphore, target, self._resolve) for target in targets))

        # 2. Suppression, groupée par type
        async def delete_one(target: _Target) -> None:
            await self._delete_one(target, delete_files, add_exclusion)

        for kind in (MOVIE, SERIES, EPISODE):
            group = [t for t in targets if t.kind == kind and t.error is None]
            if not group:
                continue
            if self.use_bulk and len(group) > 1 and await self._delete_bulk(kind, group, delete_files, add_exclusion):
                continue
            await asyncio.gather(*(self._guarded(semaphore, target, delete_one) for target in group))

        # 3. Application des résultats en base, séquentiellement
        now = utcnow()
        for target in targets:
            self._store_resolved_ids(target)
            if target.error is None:
                self._mark_deleted(target, deleted_by, delete_files, now)
                result.success += 1
            else:
                target.candidate.deletion_error = target.error
                result.add_failure(f"{target.candidate.title}: {target.error}")
        self.db.commit()

        logger.info(
            "deletion_completed",
            deleted_by=deleted_by,
            success=result.success,
            failed=result.failed,
        )
        return result

    async def _guarded(
        self,
        semaphore: asyncio.Semaphore,
        target: _Target,
        operation: Callable[[_Target], Awaitable[None]],
    ) -> None:
        """Un appel externe sous le sémaphore, avec son propre timeout."""
        async with semaphore:
            try:
                await asyncio.wait_for(operation(target), timeout=self.timeout)
            except asyncio.TimeoutError:
                target.error = f"Timed out after {self.timeout:g}s"
            except MaintenanceError as e:
                target.error = str(e)
            except httpx.HTTPError as e:
                target.error = f"{type(e).__name__}: {str(e)}"
            except Exception as e:
                logger.exception("deletion_call_crashed", candidate_id=target.candidate.id)
                target.error = f"Unexpected error: {str(e)}"
            if target.error:
                logger.warning(
                    "deletion_item_failed",
                    candidate_id=target.candidate.id,
                    title=target.candidate.title,
                    error=target.error,
                )

    async def _resolve(self, target: _Target) -> None:
        candidate = target.candidate
        if target.kind == MOVIE:
            if self.radarr is None:
                raise UnresolvedTargetError("Radarr is not configured")
            if candidate.radarr_id is not None:
                target.external_id = candidate.radarr_id
                return
            if candidate.tmdb_id is None:
                raise UnresolvedTargetError("No Radarr ID and no TMDb ID to look it up")
            target.external_id = await self.radarr.lookup_movie_id(candidate.tmdb_id)
            if target.external_id is None:
                raise UnresolvedTargetError(f"Movie with TMDb ID {candidate.tmdb_id} not found in Radarr")
            return

        if self.sonarr is None:
            raise UnresolvedTargetError("Sonarr is not configured")
        if candidate.sonarr_id is not None:
            target.external_id = candidate.sonarr_id
            return
        if candidate.tvdb_id is None:
            raise UnresolvedTargetError("No Sonarr ID and no TVDb ID to look it up")
        series_id = await self.sonarr.lookup_series_id(candidate.tvdb_id)
        if series_id is None:
            raise UnresolvedTargetError(f"Series with TVDb ID {candidate.tvdb_id} not found in Sonarr")
        if target.kind == SERIES:
            target.external_id = series_id
            return

        # Épisode: on supprime son fichier
        if candidate.season_number is None or candidate.episode_number is None:
            raise UnresolvedTargetError("Episode has no season/episode number")
        target.external_id = await self.sonarr.lookup_episode_file_id(
            series_id, candidate.season_number, candidate.episode_number
        )
        if target.external_id is None:
            raise UnresolvedTargetError(
                f"No file for S{candidate.season_number:02d}E{candidate.episode_number:02d} in Sonarr"
            )

    async def _delete_one(self, target: _Target, delete_files: bool, add_exclusion: Optional[bool]) -> None:
        if target.kind == MOVIE:
            deleted = await self.radarr.delete_movie(target.external_id, delete_files, add_exclusion)
        elif target.kind == SERIES:
            deleted = await self.sonarr.delete_series(target.external_id, delete_files, add_exclusion)
        else:
            deleted = await self.sonarr.delete_episode_file(target.external_id)
        if not deleted:
            logger.info("deletion_already_gone", candidate_id=target.candidate.id, external_id=target.external_id)

    async def _delete_bulk(
        self,
        kind: str,
        group: List[_Target],
        delete_files: bool,
        add_exclusion: Optional[bool],
    ) -> bool:
        """Tente l'endpoint bulk; False => repli sur les appels unitaires."""
        external_ids = list(dict.fromkeys(t.external_id for t in group))
        try:
            if kind == MOVIE:
                call = self.radarr.delete_movies_bulk(external_ids, delete_files, add_exclusion)
            elif kind == SERIES:
                call = self.sonarr.delete_series_bulk(external_ids, delete_files, add_exclusion)
            else:
                call = self.sonarr.delete_episode_files_bulk(external_ids)
            await asyncio.wait_for(call, timeout=self.timeout)
        except (MaintenanceError, httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning("bulk_delete_failed_falling_back", kind=kind, count=len(external_ids), error=str(e) or type(e).__name__)
            return False
        logger.info("bulk_delete_succeeded", kind=kind, count=len(external_ids))
        return True

    @staticmethod
    def _store_resolved_ids(target: _Target) -> None:
        if target.external_id is None:
            return
        if target.kind == MOVIE:
            target.candidate.radarr_id = target.external_id
        else:
            target.candidate.sonarr_id = target.external_id

    def _mark_deleted(self, target: _Target, deleted_by: str, delete_files: bool, now) -> None:
        candidate = target.candidate
        self.db.refresh(candidate, ["review_status"])
        if candidate.review_status == ReviewStatus.DELETED:
            # Supprimé entre-temps par un autre lot
            return
        candidate.review_status = ReviewStatus.DELETED
        candidate.deleted_at = now
        candidate.deletion_error = None
        rule_names = [entry.get("ruleName") for entry in candidate.matched_rules or [] if entry.get("ruleName")]
        self.db.add(MaintenanceDeletionLog(
            candidate_id=candidate.id,
            media_type=candidate.media_type,
            title=candidate.title,
            year=candidate.year,
            file_size=candidate.file_size,
            deleted_by=deleted_by,
            deleted_at=now,
            deleted_from=target.deleted_from,
            files_deleted=delete_files,
            rule_names=rule_names,
        ))
