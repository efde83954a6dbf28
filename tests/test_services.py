from __future__ import annotations

import asyncio
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest

from maintainarr.core.errors import CatalogError, ExternalServiceError
from maintainarr.core.models import MediaType
from maintainarr.services.arr import check_delete_response
from maintainarr.services.plex import PlexService
from maintainarr.services.radarr import RadarrService
from maintainarr.services.sonarr import SonarrService
from maintainarr.utils.http_client import CircuitBreaker, CircuitOpenError, RobustHTTPClient


def client_for(handler) -> RobustHTTPClient:
    return RobustHTTPClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize("status, expected", [(200, True), (202, True), (404, False)])
def test_check_delete_response(status, expected):
    assert check_delete_response("Radarr", httpx.Response(status)) is expected


def test_check_delete_response_raises_with_body():
    with pytest.raises(ExternalServiceError) as exc_info:
        check_delete_response("Sonarr", httpx.Response(500, text="database is locked"))
    assert exc_info.value.status_code == 500
    assert exc_info.value.text == "database is locked"


def test_radarr_lookup_by_tmdb(config):
    def handler(request):
        assert request.url.params["tmdbId"] == "603"
        return httpx.Response(200, json=[{"id": 42, "tmdbId": 603}])

    service = RadarrService(http_client=client_for(handler))
    assert asyncio.run(service.lookup_movie_id(603)) == 42


def test_radarr_lookup_error_is_reported(config):
    service = RadarrService(http_client=client_for(lambda request: httpx.Response(401, text="Unauthorized")))
    with pytest.raises(ExternalServiceError):
        asyncio.run(service.lookup_movie_id(603))


def test_sonarr_episode_file_lookup(config):
    def handler(request):
        if request.url.path == "/api/v3/series":
            return httpx.Response(200, json=[{"id": 12, "tvdbId": 81189}])
        assert request.url.params["seriesId"] == "12"
        return httpx.Response(200, json=[
            {"seasonNumber": 2, "episodeNumber": 4, "hasFile": True, "episodeFileId": 300},
            {"seasonNumber": 2, "episodeNumber": 5, "hasFile": True, "episodeFileId": 301},
            {"seasonNumber": 2, "episodeNumber": 6, "hasFile": False, "episodeFileId": 0},
        ])

    service = SonarrService(http_client=client_for(handler))

    assert asyncio.run(service.lookup_series_id(81189)) == 12
    assert asyncio.run(service.lookup_episode_file_id(12, 2, 5)) == 301
    assert asyncio.run(service.lookup_episode_file_id(12, 2, 6)) is None


def test_sonarr_series_delete_params(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200)

    service = SonarrService(http_client=client_for(handler))
    assert asyncio.run(service.delete_series(12, delete_files=True)) is True

    assert requests[0].url.path == "/api/v3/series/12"
    assert requests[0].url.params["addImportListExclusion"] == "false"


def test_sonarr_bulk_episode_file_delete_raises_on_error(config):
    service = SonarrService(http_client=client_for(lambda request: httpx.Response(400, text="bad ids")))
    with pytest.raises(ExternalServiceError):
        asyncio.run(service.delete_episode_files_bulk([1, 2]))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_circuit_breaker_opens_then_half_opens():
    clock = FakeClock()
    breaker = CircuitBreaker("radarr", failure_threshold=2, reset_after=60, clock=clock)
    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()

    clock.now = 61
    assert breaker.allow_request()
    assert breaker.state == "half_open"
    # un essai en échec ré-ouvre immédiatement
    breaker.record_failure()
    assert breaker.state == "open"

    clock.now = 200
    assert breaker.allow_request()
    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.failure_count == 0


def test_half_open_circuit_lets_a_single_call_through():
    clock = FakeClock()
    breaker = CircuitBreaker("sonarr", failure_threshold=1, reset_after=60, clock=clock)
    breaker.record_failure()
    clock.now = 61

    assert breaker.allow_request() is True
    assert breaker.allow_request() is False
    assert breaker.allow_request() is False

    breaker.record_success()
    assert breaker.allow_request() is True
    assert breaker.allow_request() is True


def test_half_open_circuit_reopens_for_waiting_callers_after_failed_trial():
    clock = FakeClock()
    breaker = CircuitBreaker("sonarr", failure_threshold=1, reset_after=60, clock=clock)
    breaker.record_failure()
    clock.now = 61
    assert breaker.allow_request()
    assert not breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()
    clock.now = 122
    assert breaker.allow_request()


def test_cancelled_trial_call_frees_the_half_open_slot(config):
    async def hang(request):
        await asyncio.sleep(10)
        return httpx.Response(200)

    client = client_for(hang)
    clock = FakeClock()
    breaker = CircuitBreaker("radarr", failure_threshold=1, reset_after=60, clock=clock)
    client.circuit_breakers["radarr"] = breaker
    breaker.record_failure()
    clock.now = 61

    async def call():
        await asyncio.wait_for(client.send("GET", "http://radarr:7878/api/v3/movie", "radarr"), timeout=0.05)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(call())
    assert breaker.state == "half_open"
    assert breaker.allow_request()


def test_server_errors_count_against_circuit(config):
    client = client_for(lambda request: httpx.Response(503))
    response = asyncio.run(client.send("GET", "http://radarr:7878/api/v3/movie", "radarr"))
    assert response.status_code == 503
    assert client.circuit_breakers["radarr"].failure_count == 1


def test_open_circuit_short_circuits_calls(config):
    calls = []
    client = client_for(lambda request: calls.append(request) or httpx.Response(200))
    breaker = client.breaker("sonarr")
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()

    with pytest.raises(CircuitOpenError):
        asyncio.run(client.send("GET", "http://sonarr:8989/api/v3/series", "sonarr"))
    assert calls == []


def test_diagnostic_status_call(config):
    def handler(request):
        assert request.url.path == "/api/v3/system/status"
        return httpx.Response(200, json={"version": "5.2.6"})

    assert asyncio.run(RadarrService(http_client=client_for(handler)).system_status()) == {"version": "5.2.6"}


# --- Plex catalogue -------------------------------------------------------


def plex_movie(key, **overrides):
    part = SimpleNamespace(file=f"/movies/{key}.mkv", size=2048)
    values = dict(
        ratingKey=key,
        title=f"Movie {key}",
        year=2001,
        viewCount=0,
        lastViewedAt=None,
        addedAt=datetime(2020, 1, 1),
        media=[SimpleNamespace(videoResolution="1080", parts=[part])],
        rating=6.5,
        labels=[SimpleNamespace(tag="kids")],
        guids=[SimpleNamespace(id="tmdb://603"), SimpleNamespace(id="imdb://tt0133093")],
        thumb="/thumb",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class FakeSection:
    def __init__(self, key, section_type, items, fail_at=None):
        self.key = key
        self.type = section_type
        self.title = f"Library {key}"
        self.items = items
        self.fail_at = fail_at
        self.searches = []

    def search(self, libtype, container_start, container_size, maxresults):
        self.searches.append(container_start)
        if self.fail_at is not None and container_start >= self.fail_at:
            raise ConnectionError("connection reset")
        return self.items[container_start:container_start + container_size]


class FakeServer:
    def __init__(self, sections):
        self.library = SimpleNamespace(
            sections=lambda: sections,
            sectionByID=lambda section_id: next(s for s in sections if s.key == section_id),
        )


def test_plex_pages_movies_and_converts_fields(config):
    section = FakeSection(1, "movie", [plex_movie(n) for n in range(5)])
    service = PlexService(server=FakeServer([section, FakeSection(2, "show", [])]))

    pages = list(service.list_media_items(MediaType.MOVIE, page_size=2))

    assert [len(page) for page in pages] == [2, 2, 1]
    assert section.searches == [0, 2, 4]
    first = pages[0][0]
    assert first.plex_rating_key == "0"
    assert first.library_id == "1"
    assert first.tmdb_id == 603
    assert first.quality == "1080"
    assert first.file_size == 2048
    assert first.file_path == "/movies/0.mkv"
    assert first.tags == ["kids"]
    assert first.never_watched


def test_plex_restricts_to_requested_libraries(config):
    wanted = FakeSection(3, "movie", [plex_movie("a")])
    other = FakeSection(4, "movie", [plex_movie("b")])
    service = PlexService(server=FakeServer([wanted, other]))

    pages = list(service.list_media_items(MediaType.MOVIE, library_ids=["3"], page_size=10))

    assert [item.plex_rating_key for page in pages for item in page] == ["a"]
    assert other.searches == []


def test_plex_page_failure_raises_catalog_error(config):
    section = FakeSection(1, "movie", [plex_movie(n) for n in range(4)], fail_at=2)
    service = PlexService(server=FakeServer([section]))

    with pytest.raises(CatalogError):
        list(service.list_media_items(MediaType.MOVIE, page_size=2))
