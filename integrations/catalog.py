from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import aiohttp

from core.errors import GatewayUnavailable
from core.models import EPISODE, MOVIE, TV_SERIES, MediaSnapshot
from core.utils import (
    get_file_size,
    get_quality_name,
    get_rating,
    parse_ts,
    title_key,
)
from integrations.clients import (
    KIND_FOR_MEDIA,
    ServiceEndpoint,
    perform_action,
    resolve_service,
)
from integrations.clients import radarr as rd_mod
from integrations.clients import sonarr as so_mod
from integrations.clients import tautulli as tt_mod
from integrations.clients.radarr import RequestFn
from integrations.services import ServiceRequestError


# Plex section types holding each media type's watch data
SECTION_TYPE_FOR_MEDIA = {
    MOVIE: 'movie',
    TV_SERIES: 'show',
    EPISODE: 'show',
}


class WatchStats:
    __slots__ = ('play_count', 'last_watched_at', 'library_id')

    def __init__(self, play_count: int = 0, last_watched_at=None, library_id: Optional[str] = None) -> None:
        self.play_count = play_count
        self.last_watched_at = last_watched_at
        self.library_id = library_id

    def add(self, plays: int, watched_at) -> None:
        self.play_count += plays
        if watched_at is not None and (self.last_watched_at is None or watched_at > self.last_watched_at):
            self.last_watched_at = watched_at


class CatalogListing:
    """Restartable async sequence of snapshots.

    Every ``async for`` fetches afresh. After an iteration, ``degraded`` tells
    whether a contributing source (watch statistics) could not be reached.
    """

    def __init__(self, fetch: Callable[['CatalogListing'], AsyncIterator[MediaSnapshot]], media_type: str) -> None:
        self._fetch = fetch
        self.media_type = media_type
        self.degraded_sources: List[str] = []

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)

    def mark_degraded(self, source: str) -> None:
        if source not in self.degraded_sources:
            self.degraded_sources.append(source)

    def __aiter__(self) -> AsyncIterator[MediaSnapshot]:
        self.degraded_sources = []
        return self._fetch(self)


class MediaCatalogGateway:
    def __init__(
        self,
        services: Dict[str, ServiceEndpoint],
        request: RequestFn,
        *,
        debug_logging: bool = False,
    ) -> None:
        self.services = services
        self.request = request
        self.debug_logging = debug_logging

    # ---- listing ----

    def list_items(
        self,
        session: aiohttp.ClientSession,
        media_type: str,
        service_id: Optional[str] = None,
    ) -> CatalogListing:
        async def _fetch(listing: CatalogListing) -> AsyncIterator[MediaSnapshot]:
            svc = self._library_service(media_type, service_id)
            if media_type == MOVIE:
                items = await self._inventory(rd_mod.radarr_list_movies(session, self.request, svc.name, svc.api_url, svc.api_key), svc)
                watch = await self._section_watch(session, media_type, listing)
                for movie in items:
                    yield self._movie_snapshot(svc, movie, watch, listing.degraded)
            elif media_type == TV_SERIES:
                items = await self._inventory(so_mod.sonarr_list_series(session, self.request, svc.name, svc.api_url, svc.api_key), svc)
                watch = await self._section_watch(session, media_type, listing)
                for series in items:
                    yield self._series_snapshot(svc, series, watch, listing.degraded)
            else:
                items = await self._inventory(so_mod.sonarr_list_series(session, self.request, svc.name, svc.api_url, svc.api_key), svc)
                watch = await self._section_watch(session, TV_SERIES, listing)
                history = await self._episode_history(session, listing)
                for series in items:
                    episodes = await so_mod.sonarr_list_episodes(
                        session, self.request, svc.name, svc.api_url, svc.api_key, series.get('id'),
                    )
                    if episodes is None:
                        raise GatewayUnavailable(svc.name, f"episode listing failed for series {series.get('id')}")
                    for ep in episodes:
                        if not ep.get('hasFile'):
                            continue
                        yield self._episode_snapshot(svc, series, ep, watch, history, listing.degraded)

        return CatalogListing(_fetch, media_type)

    async def get_item(
        self,
        session: aiohttp.ClientSession,
        media_type: str,
        external_id: str,
        service_id: Optional[str] = None,
    ) -> Optional[MediaSnapshot]:
        """Look one item up by id and join its watch data; None when the service has no such item."""
        svc = self._library_service(media_type, service_id)
        listing = CatalogListing(None, media_type)
        base = (session, self.request, svc.name, svc.api_url, svc.api_key)
        try:
            if media_type == MOVIE:
                movie = await rd_mod.radarr_get_movie(*base, external_id, raise_errors=True)
                if movie is None:
                    return None
                watch = await self._section_watch(session, media_type, listing)
                return self._movie_snapshot(svc, movie, watch, listing.degraded)
            if media_type == TV_SERIES:
                series = await so_mod.sonarr_get_series(*base, external_id, raise_errors=True)
                if series is None:
                    return None
                watch = await self._section_watch(session, media_type, listing)
                return self._series_snapshot(svc, series, watch, listing.degraded)
            ep = await so_mod.sonarr_get_episode(*base, external_id)
            if ep is None or not ep.get('hasFile'):
                return None
            series = ep.get('series')
            if not isinstance(series, dict):
                series = await so_mod.sonarr_get_series(*base, ep.get('seriesId'), raise_errors=True)
                if series is None:
                    return None
        except ServiceRequestError as e:
            if e.status == 404:
                return None
            raise GatewayUnavailable(svc.name, f'item lookup failed: {e}') from e
        watch = await self._section_watch(session, TV_SERIES, listing)
        history = await self._episode_history(session, listing)
        return self._episode_snapshot(svc, series, ep, watch, history, listing.degraded)

    # ---- actions ----

    async def perform_action(
        self,
        session: aiohttp.ClientSession,
        media_type: str,
        service_id: Optional[str],
        action_type: str,
        external_id: str,
    ) -> str:
        return await perform_action(session, self.request, self.services, media_type, service_id, action_type, external_id)

    # ---- helpers ----

    def _library_service(self, media_type: str, service_id: Optional[str]) -> ServiceEndpoint:
        kind = KIND_FOR_MEDIA[media_type]
        svc = resolve_service(self.services, kind, service_id)
        if svc is None:
            raise GatewayUnavailable(service_id or kind, f'no configured {kind} service')
        return svc

    async def _inventory(self, call, svc: ServiceEndpoint) -> List[Dict[str, Any]]:
        items = await call
        if items is None:
            raise GatewayUnavailable(svc.name, 'inventory request failed')
        if self.debug_logging:
            import logging
            logging.info(f'Service {svc.name}: {len(items)} item(s) in inventory')
        return items

    async def _section_watch(
        self,
        session: aiohttp.ClientSession,
        media_type: str,
        listing: CatalogListing,
    ) -> Dict[str, WatchStats]:
        watch: Dict[str, WatchStats] = {}
        svc = resolve_service(self.services, 'tautulli')
        if svc is None:
            listing.mark_degraded('tautulli')
            return watch
        section_ids = list(svc.library_ids)
        if not section_ids:
            libraries = await tt_mod.tautulli_get_libraries(session, self.request, svc.name, svc.api_url, svc.api_key)
            if libraries is None:
                self._watch_failed(svc, listing, 'get_libraries failed')
                return watch
            wanted = SECTION_TYPE_FOR_MEDIA[media_type]
            section_ids = [str(lib.get('section_id')) for lib in libraries if lib.get('section_type') == wanted]
        titles: Dict[str, List[WatchStats]] = {}
        for section_id in section_ids:
            rows = await tt_mod.tautulli_get_library_media_info(session, self.request, svc.name, svc.api_url, svc.api_key, section_id)
            if rows is None:
                self._watch_failed(svc, listing, f'get_library_media_info failed for section {section_id}')
                return {}
            for row in rows:
                key = title_key(row.get('title'), row.get('year'))
                stats = watch.get(key)
                if stats is None:
                    stats = watch[key] = WatchStats(library_id=str(section_id))
                    titles.setdefault(title_key(row.get('title')), []).append(stats)
                stats.add(_int(row.get('play_count')), parse_ts(row.get('last_played')))
        # Title-only fallback for a year that differs between services, unless the title is ambiguous
        for key, candidates in titles.items():
            if len(candidates) == 1:
                watch.setdefault(key, candidates[0])
        return watch

    async def _episode_history(
        self,
        session: aiohttp.ClientSession,
        listing: CatalogListing,
    ) -> Dict[Tuple[str, int, int], WatchStats]:
        history: Dict[Tuple[str, int, int], WatchStats] = {}
        svc = resolve_service(self.services, 'tautulli')
        if svc is None:
            listing.mark_degraded('tautulli')
            return history
        rows = await tt_mod.tautulli_get_episode_history(session, self.request, svc.name, svc.api_url, svc.api_key)
        if rows is None:
            self._watch_failed(svc, listing, 'get_history failed')
            return history
        for row in rows:
            key = (title_key(row.get('grandparent_title')), _int(row.get('parent_media_index')), _int(row.get('media_index')))
            history.setdefault(key, WatchStats()).add(1, parse_ts(row.get('date') or row.get('stopped')))
        return history

    def _watch_failed(self, svc: ServiceEndpoint, listing: CatalogListing, message: str) -> None:
        import logging
        logging.warning(f'Service {svc.name}: {message}; continuing without watch data')
        listing.mark_degraded(svc.name)

    def _lookup(self, watch: Dict[str, WatchStats], title: Any, year: Any) -> Optional[WatchStats]:
        stats = watch.get(title_key(title, year))
        if stats is None:
            stats = watch.get(title_key(title))
        return stats

    def _movie_snapshot(self, svc, movie: Dict[str, Any], watch: Dict[str, WatchStats], degraded: bool) -> MediaSnapshot:
        stats = self._lookup(watch, movie.get('title'), movie.get('year'))
        return _snapshot(svc, movie, stats, degraded)

    def _series_snapshot(self, svc, series: Dict[str, Any], watch: Dict[str, WatchStats], degraded: bool) -> MediaSnapshot:
        stats = self._lookup(watch, series.get('title'), series.get('year'))
        return _snapshot(svc, series, stats, degraded)

    def _episode_snapshot(
        self,
        svc,
        series: Dict[str, Any],
        ep: Dict[str, Any],
        watch: Dict[str, WatchStats],
        history: Dict[Tuple[str, int, int], WatchStats],
        degraded: bool,
    ) -> MediaSnapshot:
        season = _int(ep.get('seasonNumber'))
        number = _int(ep.get('episodeNumber'))
        show_stats = self._lookup(watch, series.get('title'), series.get('year'))
        stats = history.get((title_key(series.get('title')), season, number))
        ep_file = ep.get('episodeFile') if isinstance(ep.get('episodeFile'), dict) else {}
        snap = MediaSnapshot(
            external_id=str(ep.get('id')),
            title=f"{series.get('title')} S{season:02d}E{number:02d}",
            year=series.get('year'),
            added_at=parse_ts(ep_file.get('dateAdded')),
            file_size_bytes=get_file_size(ep),
            quality=get_quality_name(ep),
            rating=None,
            library_id=(show_stats.library_id if show_stats else None) or series.get('rootFolderPath') or None,
            service_id=svc.name,
        )
        # An episode of a show Tautulli knows has zero plays unless its history says otherwise
        if not degraded and show_stats is not None:
            snap.play_count = stats.play_count if stats else 0
            snap.last_watched_at = stats.last_watched_at if stats else None
        return snap


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _snapshot(svc: ServiceEndpoint, item: Dict[str, Any], stats: Optional[WatchStats], degraded: bool) -> MediaSnapshot:
    snap = MediaSnapshot(
        external_id=str(item.get('id')),
        title=str(item.get('title') or ''),
        year=item.get('year') or None,
        added_at=parse_ts(item.get('added')),
        file_size_bytes=get_file_size(item),
        quality=get_quality_name(item),
        rating=get_rating(item),
        library_id=(stats.library_id if stats else None) or item.get('rootFolderPath') or None,
        service_id=svc.name,
    )
    # Items Tautulli does not list keep unknown watch data rather than zero
    if not degraded and stats is not None:
        snap.play_count = stats.play_count
        snap.last_watched_at = stats.last_watched_at
    return snap
