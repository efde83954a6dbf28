"""Radarr API client."""
from typing import List, Optional

from maintainarr.config import get_config
from maintainarr.services.arr import ArrService
from maintainarr.utils.http_client import RobustHTTPClient


class RadarrService(ArrService):
    """Service pour interagir avec Radarr."""

    display_name = "Radarr"

    def __init__(self, http_client: Optional[RobustHTTPClient] = None):
        config = get_config()
        if not config.radarr:
            raise ValueError("Radarr configuration not found")
        super().__init__(config.radarr.url, config.radarr.api_key, http_client)
        self.add_import_exclusion = config.radarr.add_import_exclusion

    def _exclusion(self, add_exclusion: Optional[bool]) -> bool:
        return self.add_import_exclusion if add_exclusion is None else add_exclusion

    async def lookup_movie_id(self, tmdb_id: int) -> Optional[int]:
        """Retrouve l'ID Radarr d'un film à partir de son ID TMDb."""
        for movie in await self._get_json("movie", params={"tmdbId": tmdb_id}):
            if movie.get("tmdbId") == tmdb_id:
                return movie.get("id")
        return None

    async def delete_movie(self, movie_id: int, delete_files: bool = True, add_exclusion: Optional[bool] = None) -> bool:
        """Supprime un film; False quand Radarr ne le connaît plus (404)."""
        return await self._delete_one(
            f"movie/{movie_id}",
            params={
                "deleteFiles": str(delete_files).lower(),
                "addImportExclusion": str(self._exclusion(add_exclusion)).lower(),
            },
        )

    async def delete_movies_bulk(self, movie_ids: List[int], delete_files: bool = True, add_exclusion: Optional[bool] = None) -> None:
        await self._delete_bulk(
            "movie/bulk",
            {
                "movieIds": movie_ids,
                "deleteFiles": delete_files,
                "addImportExclusion": self._exclusion(add_exclusion),
            },
        )
