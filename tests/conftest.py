from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional, Union

import pytest

from maintainarr.config import Config, MaintenanceConfig, RadarrConfig, SchedulerConfig, SonarrConfig, set_config
from maintainarr.core.models import ActionType, MediaItem, MediaType, ReviewStatus, ScanStatus, utcnow
from maintainarr.db import database
from maintainarr.db.models import MaintenanceCandidate, MaintenanceRule, MaintenanceScan


@pytest.fixture
def config() -> Config:
    return set_config(Config(
        radarr=RadarrConfig(url="http://radarr:7878", api_key="radarr-key"),
        sonarr=SonarrConfig(url="http://sonarr:8989", api_key="sonarr-key"),
        maintenance=MaintenanceConfig(deletion_concurrency=2, request_timeout_seconds=5),
        scheduler=SchedulerConfig(enabled=False),
    ))


@pytest.fixture
def db(config):
    database.init_engine("sqlite://")
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()
        database.engine.dispose()


def make_rule(db, **overrides) -> MaintenanceRule:
    values = dict(
        name="Unwatched movies",
        media_type=MediaType.MOVIE,
        criteria={"neverWatched": True, "operator": "AND"},
        action_type=ActionType.FLAG_FOR_REVIEW,
        enabled=True,
    )
    values.update(overrides)
    rule = MaintenanceRule(**values)
    db.add(rule)
    db.commit()
    return rule


def make_scan(db, rule: MaintenanceRule, status: ScanStatus = ScanStatus.COMPLETED) -> MaintenanceScan:
    scan = MaintenanceScan(rule_id=rule.id, status=status)
    db.add(scan)
    db.commit()
    return scan


def make_candidate(db, rule: MaintenanceRule, scan: MaintenanceScan, **overrides) -> MaintenanceCandidate:
    key = overrides.pop("plex_rating_key", None) or f"plex-{db.query(MaintenanceCandidate).count() + 1}"
    values = dict(
        scan_id=scan.id,
        rule_id=rule.id,
        media_type=rule.media_type,
        plex_rating_key=key,
        title=f"Title {key}",
        year=2010,
        file_size=4 * 1024 ** 3,
        play_count=0,
        matched_rules=[{"ruleId": rule.id, "ruleName": rule.name, "operator": "AND", "conditions": []}],
        review_status=ReviewStatus.PENDING,
    )
    values.update(overrides)
    candidate = MaintenanceCandidate(**values)
    db.add(candidate)
    db.commit()
    return candidate


def make_item(key: str, **overrides) -> MediaItem:
    values = dict(plex_rating_key=key, title=f"Movie {key}", year=2012, library_id="1")
    values.update(overrides)
    return MediaItem(**values)


def days_ago(days: int):
    return utcnow() - timedelta(days=days)


class FakeCatalog:
    """Catalogue en mémoire; une page peut être une exception à lever."""

    def __init__(self, pages: List[Union[List[MediaItem], Exception]]):
        self.pages = pages
        self.calls: List[dict] = []

    def list_media_items(self, media_type, library_ids=None, page_size=None):
        self.calls.append({"media_type": media_type, "library_ids": library_ids, "page_size": page_size})
        for page in self.pages:
            if isinstance(page, Exception):
                raise page
            yield page


class FakeRadarr:
    def __init__(self, outcomes: Optional[Dict[int, object]] = None, lookups: Optional[Dict[int, int]] = None,
                 bulk_error: Optional[Exception] = None):
        self.outcomes = outcomes or {}
        self.lookups = lookups or {}
        self.bulk_error = bulk_error
        self.deleted: List[int] = []
        self.bulk_calls: List[List[int]] = []

    async def lookup_movie_id(self, tmdb_id):
        return self.lookups.get(tmdb_id)

    async def delete_movie(self, movie_id, delete_files=True, add_exclusion=None):
        self.deleted.append(movie_id)
        outcome = self.outcomes.get(movie_id, True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def delete_movies_bulk(self, movie_ids, delete_files=True, add_exclusion=None):
        self.bulk_calls.append(list(movie_ids))
        if self.bulk_error is not None:
            raise self.bulk_error


class FakeSonarr:
    def __init__(self, series: Optional[Dict[int, int]] = None, episode_files: Optional[Dict[tuple, int]] = None):
        self.series = series or {}
        self.episode_files = episode_files or {}
        self.deleted_series: List[int] = []
        self.deleted_episode_files: List[int] = []

    async def lookup_series_id(self, tvdb_id):
        return self.series.get(tvdb_id)

    async def lookup_episode_file_id(self, series_id, season_number, episode_number):
        return self.episode_files.get((series_id, season_number, episode_number))

    async def delete_series(self, series_id, delete_files=True, add_exclusion=None):
        self.deleted_series.append(series_id)
        return True

    async def delete_series_bulk(self, series_ids, delete_files=True, add_exclusion=None):
        self.deleted_series.extend(series_ids)

    async def delete_episode_file(self, episode_file_id):
        self.deleted_episode_files.append(episode_file_id)
        return True

    async def delete_episode_files_bulk(self, episode_file_ids):
        self.deleted_episode_files.extend(episode_file_ids)
