"""Pydantic models for API requests/responses."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from maintainarr.core.models import ActionType, MediaItem, MediaType, ReviewStatus, ScanStatus


class RuleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    enabled: bool = True
    media_type: MediaType
    criteria: Dict[str, Any]
    action_type: ActionType = ActionType.FLAG_FOR_REVIEW
    schedule: Optional[str] = None  # cron 5 champs


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    media_type: Optional[MediaType] = None
    criteria: Optional[Dict[str, Any]] = None
    action_type: Optional[ActionType] = None
    schedule: Optional[str] = None


class ScanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_id: int
    status: ScanStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    items_scanned: int
    items_flagged: int
    error: Optional[str] = None
    created_at: datetime


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    enabled: bool
    media_type: MediaType
    criteria: Dict[str, Any]
    action_type: ActionType
    schedule: Optional[str] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    latest_scan: Optional[ScanResponse] = None
    scan_count: int = 0


class RuleDeleteResponse(BaseModel):
    rule_id: int
    scans_deleted: int
    candidates_deleted: int


class ScanTriggerResponse(BaseModel):
    scan_id: int
    status: ScanStatus
    message: str


class CandidateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: int
    rule_id: int
    media_type: MediaType
    plex_rating_key: str
    radarr_id: Optional[int] = None
    sonarr_id: Optional[int] = None
    tmdb_id: Optional[int] = None
    tvdb_id: Optional[int] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    title: str
    year: Optional[int] = None
    poster: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    play_count: int
    last_watched_at: Optional[datetime] = None
    added_at: Optional[datetime] = None
    rating: Optional[float] = None
    matched_rules: List[Dict[str, Any]]
    flagged_at: datetime
    review_status: ReviewStatus
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_note: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deletion_error: Optional[str] = None


class CandidatePage(BaseModel):
    items: List[CandidateResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class ReviewRequest(BaseModel):
    reviewer: str = "admin"
    note: Optional[str] = None


class BulkReviewRequest(BaseModel):
    candidate_ids: List[int] = Field(min_length=1)
    reviewer: str = "admin"
    note: Optional[str] = None


class ReviewOutcomeResponse(BaseModel):
    candidate_id: int
    status: str  # ok, not_found, conflict, error
    review_status: Optional[ReviewStatus] = None
    message: Optional[str] = None


class BulkReviewResponse(BaseModel):
    succeeded: int
    failed: int
    results: List[ReviewOutcomeResponse]


class DeleteRequest(BaseModel):
    candidate_ids: List[int] = Field(min_length=1)
    deleted_by: str = "admin"
    delete_files: Optional[bool] = None
    add_exclusion: Optional[bool] = None


class DeletionResponse(BaseModel):
    success: int
    failed: int
    errors: List[str]


class PreviewItem(BaseModel):
    """Item fourni directement à la prévisualisation."""
    plex_rating_key: str
    title: str
    year: Optional[int] = None
    library_id: Optional[str] = None
    play_count: int = 0
    last_watched_at: Optional[datetime] = None
    added_at: Optional[datetime] = None
    file_size: Optional[int] = None
    quality: Optional[str] = None
    rating: Optional[float] = None
    tags: List[str] = Field(default_factory=list)

    def to_media_item(self) -> MediaItem:
        return MediaItem(**self.model_dump())


class PreviewRequest(BaseModel):
    criteria: Dict[str, Any]
    media_type: MediaType = MediaType.MOVIE
    items: Optional[List[PreviewItem]] = None  # sinon: échantillon du catalogue
    limit: int = Field(default=50, ge=1, le=500)


class PreviewResult(BaseModel):
    plex_rating_key: str
    title: str
    matches: bool
    conditions: List[Dict[str, Any]]


class PreviewResponse(BaseModel):
    operator: str
    evaluated: int
    matched: int
    results: List[PreviewResult]


class DeletionLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    candidate_id: Optional[int] = None
    media_type: MediaType
    title: str
    year: Optional[int] = None
    file_size: Optional[int] = None
    deleted_by: str
    deleted_at: datetime
    deleted_from: str
    files_deleted: bool
    rule_names: List[str]


class DeletionLogPage(BaseModel):
    items: List[DeletionLogResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class MediaTypeCount(BaseModel):
    media_type: MediaType
    count: int


class DeletedByCount(BaseModel):
    deleted_by: str
    count: int


class DeletionStatsResponse(BaseModel):
    total_deletions: int
    total_space_reclaimed_bytes: int
    files_actually_deleted: int
    deletions_this_month: int
    by_media_type: List[MediaTypeCount]
    by_deleted_by: List[DeletedByCount]


class DiagnosticsResponse(BaseModel):
    plex: Dict[str, Any]
    radarr: Dict[str, Any]
    sonarr: Dict[str, Any]
