"""Sonarr API client (series and episode files)."""
from typing import List, Optional

from maintainarr.config import get_config
from maintainarr.services.arr import ArrService
from maintainarr.utils.http_client import RobustHTTPClient


class SonarrService(ArrService):
    """Service pour interagir avec Sonarr."""

    display_name = "Sonarr"

    def __init__(self, http_client: Optional[RobustHTTPClient] = None):
        config = get_config()
        if not config.sonarr:
            raise ValueError("Sonarr configuration not found")
        super().__init__(config.sonarr.url, config.sonarr.api_key, http_client)
        self.add_import_list_exclusion = config.sonarr.add_import_list_exclusion

    def _exclusion(self, add_exclusion: Optional[bool]) -> bool:
        return self.add_import_list_exclusion if add_exclusion is None else add_exclusion

    async def lookup_series_id(self, tvdb_id: int) -> Optional[int]:
        """Retrouve l'ID Sonarr d'une série à partir de son ID TVDb."""
        for series in await self._get_json("series", params={"tvdbId": tvdb_id}):
            if series.get("tvdbId") == tvdb_id:
                return series.get("id")
        return None

    async def lookup_episode_file_id(self, series_id: int, season_number: int, episode_number: int) -> Optional[int]:
        """episodeFileId of S{season}E{episode}, None when the episode has no file."""
        for episode in await self._get_json("episode", params={"seriesId": series_id}):
            if episode.get("seasonNumber") == season_number and episode.get("episodeNumber") == episode_number:
                if episode.get("hasFile") and episode.get("episodeFileId"):
                    return episode["episodeFileId"]
                return None
        return None

    async def delete_series(self, series_id: int, delete_files: bool = True, add_exclusion: Optional[bool] = None) -> bool:
        return await self._delete_one(
            f"series/{series_id}",
            params={
                "deleteFiles": str(delete_files).lower(),
                "addImportListExclusion": str(self._exclusion(add_exclusion)).lower(),
            },
        )

    async def delete_series_bulk(self, series_ids: List[int], delete_files: bool = True, add_exclusion: Optional[bool] = None) -> None:
        await self._delete_bulk(
            "series/editor",
            {
                "seriesIds": series_ids,
                "deleteFiles": delete_files,
                "addImportListExclusion": self._exclusion(add_exclusion),
            },
        )

    async def delete_episode_file(self, episode_file_id: int) -> bool:
        """Supprime le fichier d'un épisode (False si déjà absent)."""
        return await self._delete_one(f"episodefile/{episode_file_id}")

    async def delete_episode_files_bulk(self, episode_file_ids: List[int]) -> None:
        await self._delete_bulk("episodefile/bulk", {"episodeFileIds": episode_file_ids})
