"""Plex API client (catalogue en lecture seule)."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from plexapi.server import PlexServer

from maintainarr.config import get_config
from maintainarr.core.errors import CatalogError
from maintainarr.core.models import MediaItem, MediaType

logger = logging.getLogger(__name__)

# MediaType -> (type de section Plex, libtype de recherche)
SECTION_TYPES: Dict[MediaType, Tuple[str, str]] = {
    MediaType.MOVIE: ("movie", "movie"),
    MediaType.TV_SERIES: ("show", "show"),
    MediaType.EPISODE: ("show", "episode"),
}


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """plexapi renvoie des datetimes locales naïves."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_guids(plex_item: Any) -> Dict[str, Any]:
    ids: Dict[str, Any] = {}
    for guid in getattr(plex_item, "guids", None) or []:
        guid_id = guid.id.lower()
        value = guid.id.split("//")[-1]
        try:
            if guid_id.startswith("tmdb"):
                ids["tmdb_id"] = int(value)
            elif guid_id.startswith("tvdb"):
                ids["tvdb_id"] = int(value)
        except ValueError:
            pass
    return ids


def _media_file(plex_item: Any) -> Tuple[Optional[str], Optional[int], Optional[str]]:
    """(chemin, taille totale, résolution) depuis les Media/Parts Plex."""
    path = None
    size = 0
    resolution = None
    for media in getattr(plex_item, "media", None) or []:
        if resolution is None:
            resolution = getattr(media, "videoResolution", None)
        for part in getattr(media, "parts", None) or []:
            if path is None:
                path = getattr(part, "file", None)
            size += getattr(part, "size", None) or 0
    return path, (size or None), resolution


def _rating(plex_item: Any) -> Optional[float]:
    for attr in ("rating", "audienceRating"):
        value = getattr(plex_item, attr, None)
        if value is not None:
            return float(value)
    return None


def _labels(plex_item: Any) -> List[str]:
    return [label.tag for label in getattr(plex_item, "labels", None) or []]


class PlexService:
    """Service pour interagir avec Plex."""

    def __init__(self, server: Optional[PlexServer] = None):
        config = get_config()
        if not config.plex and server is None:
            raise ValueError("Plex configuration not found")
        self.base_url = config.plex.url if config.plex else None
        self.token = config.plex.token if config.plex else None
        self.page_size = config.plex.page_size if config.plex else 200
        self._server: Optional[PlexServer] = server
        self._show_ids: Dict[str, Dict[str, Any]] = {}  # grandparentRatingKey -> ids

    def _get_server(self) -> PlexServer:
        """Get or create Plex server connection."""
        if self._server is None:
            self._server = PlexServer(self.base_url, self.token)
        return self._server

    def _get_sections(self, media_type: MediaType, library_ids: Optional[Sequence[str]]) -> List[Any]:
        section_type, _ = SECTION_TYPES[media_type]
        server = self._get_server()
        if library_ids:
            sections = [server.library.sectionByID(int(library_id)) for library_id in library_ids]
        else:
            sections = server.library.sections()
        return [section for section in sections if section.type == section_type]

    def list_media_items(
        self,
        media_type: MediaType,
        library_ids: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
    ) -> Iterator[List[MediaItem]]:
        """Parcourt le catalogue page par page.

        Raises CatalogError if Plex cannot be reached or a page cannot be
        fetched; items that cannot be converted are skipped and logged.
        """
        media_type = MediaType(media_type)
        page_size = page_size or self.page_size
        _, libtype = SECTION_TYPES[media_type]

        try:
            sections = self._get_sections(media_type, library_ids)
        except Exception as e:
            raise CatalogError(f"Error listing Plex libraries: {str(e)}") from e

        for section in sections:
            offset = 0
            while True:
                try:
                    batch = section.search(
                        libtype=libtype,
                        container_start=offset,
                        container_size=page_size,
                        maxresults=page_size,
                    )
                except Exception as e:
                    raise CatalogError(
                        f"Error fetching {libtype} items from Plex library {section.title}: {str(e)}"
                    ) from e

                items = []
                for plex_item in batch:
                    try:
                        items.append(self._to_media_item(media_type, plex_item, str(section.key)))
                    except Exception as e:
                        logger.warning(f"Skipping Plex item {getattr(plex_item, 'ratingKey', '?')}: {e}")
                if items:
                    yield items
                if len(batch) < page_size:
                    break
                offset += page_size

    def _to_media_item(self, media_type: MediaType, plex_item: Any, library_id: str) -> MediaItem:
        if media_type == MediaType.TV_SERIES:
            return self._show_to_media_item(plex_item, library_id)
        if media_type == MediaType.EPISODE:
            return self._episode_to_media_item(plex_item, library_id)

        path, size, resolution = _media_file(plex_item)
        return MediaItem(
            plex_rating_key=str(plex_item.ratingKey),
            title=plex_item.title,
            year=getattr(plex_item, "year", None),
            library_id=library_id,
            play_count=getattr(plex_item, "viewCount", 0) or 0,
            last_watched_at=_to_utc(getattr(plex_item, "lastViewedAt", None)),
            added_at=_to_utc(getattr(plex_item, "addedAt", None)),
            file_size=size,
            file_path=path,
            quality=resolution,
            rating=_rating(plex_item),
            tags=_labels(plex_item),
            poster=getattr(plex_item, "thumb", None),
            **_parse_guids(plex_item),
        )

    def _show_to_media_item(self, show: Any, library_id: str) -> MediaItem:
        # Dernier visionnage et taille: agrégés sur les épisodes
        last_viewed = None
        view_count = 0
        total_size = 0
        for episode in show.episodes():
            viewed_at = getattr(episode, "lastViewedAt", None)
            if viewed_at and (last_viewed is None or viewed_at > last_viewed):
                last_viewed = viewed_at
            view_count += getattr(episode, "viewCount", 0) or 0
            _, size, _ = _media_file(episode)
            total_size += size or 0

        locations = getattr(show, "locations", None) or []
        return MediaItem(
            plex_rating_key=str(show.ratingKey),
            title=show.title,
            year=getattr(show, "year", None),
            library_id=library_id,
            play_count=view_count,
            last_watched_at=_to_utc(last_viewed),
            added_at=_to_utc(getattr(show, "addedAt", None)),
            file_size=total_size or None,
            file_path=locations[0] if locations else None,
            rating=_rating(show),
            tags=_labels(show),
            poster=getattr(show, "thumb", None),
            **_parse_guids(show),
        )

    def _series_ids(self, grandparent_rating_key: Optional[str]) -> Dict[str, Any]:
        if not grandparent_rating_key:
            return {}
        key = str(grandparent_rating_key)
        if key not in self._show_ids:
            show = self._get_server().fetchItem(int(key))
            self._show_ids[key] = _parse_guids(show)
        return self._show_ids[key]

    def _episode_to_media_item(self, episode: Any, library_id: str) -> MediaItem:
        path, size, resolution = _media_file(episode)
        series_ids = self._series_ids(getattr(episode, "grandparentRatingKey", None))
        season = getattr(episode, "parentIndex", None)
        number = getattr(episode, "index", None)
        title = episode.title
        if getattr(episode, "grandparentTitle", None) and season is not None and number is not None:
            title = f"{episode.grandparentTitle} - S{int(season):02d}E{int(number):02d}"
        return MediaItem(
            plex_rating_key=str(episode.ratingKey),
            title=title,
            year=getattr(episode, "year", None),
            library_id=library_id,
            play_count=getattr(episode, "viewCount", 0) or 0,
            last_watched_at=_to_utc(getattr(episode, "lastViewedAt", None)),
            added_at=_to_utc(getattr(episode, "addedAt", None)),
            file_size=size,
            file_path=path,
            quality=resolution,
            rating=_rating(episode),
            tags=_labels(episode),
            poster=getattr(episode, "thumb", None),
            tvdb_id=series_ids.get("tvdb_id"),
            season_number=int(season) if season is not None else None,
            episode_number=int(number) if number is not None else None,
        )
