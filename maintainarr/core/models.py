"""Core business models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class MediaType(str, Enum):
    MOVIE = "MOVIE"
    TV_SERIES = "TV_SERIES"
    EPISODE = "EPISODE"


class ActionType(str, Enum):
    FLAG_FOR_REVIEW = "FLAG_FOR_REVIEW"
    AUTO_DELETE = "AUTO_DELETE"


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELETED = "DELETED"


ACTIVE_SCAN_STATUSES = (ScanStatus.PENDING, ScanStatus.RUNNING)


def utcnow() -> datetime:
    """Horodatage UTC naïf, tel que stocké en base."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class MediaItem:
    """Item du catalogue (film/série/épisode), en lecture seule."""
    plex_rating_key: str
    title: str
    year: Optional[int] = None
    library_id: Optional[str] = None

    # Lecture
    play_count: int = 0
    last_watched_at: Optional[datetime] = None
    added_at: Optional[datetime] = None

    # Fichier
    file_size: Optional[int] = None
    file_path: Optional[str] = None
    quality: Optional[str] = None  # résolution Plex brute: sd, 720, 1080, 4k...
    rating: Optional[float] = None
    tags: List[str] = field(default_factory=list)

    # IDs externes
    tmdb_id: Optional[int] = None
    tvdb_id: Optional[int] = None  # tvdb de la série pour les épisodes
    radarr_id: Optional[int] = None
    sonarr_id: Optional[int] = None
    poster: Optional[str] = None

    # Épisodes
    season_number: Optional[int] = None
    episode_number: Optional[int] = None

    @property
    def never_watched(self) -> bool:
        return self.play_count == 0
