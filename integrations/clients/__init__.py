from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import NonRetryableExecutionError, TransientExecutionError
from core.models import (
    AUTO_DELETE,
    EPISODE,
    MOVIE,
    TV_SERIES,
    UNMONITOR_AND_DELETE,
    UNMONITOR_AND_KEEP,
)
from integrations.services import ServiceRequestError

from . import radarr as rd_mod
from . import sonarr as so_mod
from .radarr import RequestFn


SERVICE_KINDS = ('radarr', 'sonarr', 'tautulli')

# Library service type per media type
KIND_FOR_MEDIA = {
    MOVIE: 'radarr',
    TV_SERIES: 'sonarr',
    EPISODE: 'sonarr',
}


@dataclass
class ServiceEndpoint:
    name: str
    kind: str
    api_url: str
    api_key: str
    active: bool = False
    library_ids: List[str] = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.api_url) and bool(self.api_key)


def resolve_service(
    services: Dict[str, ServiceEndpoint],
    kind: str,
    service_id: Optional[str] = None,
) -> Optional[ServiceEndpoint]:
    """Pick the named instance, else the active one of that kind, else the first configured."""
    if service_id:
        svc = services.get(service_id)
        if svc is None or svc.kind != kind or not svc.configured:
            return None
        return svc
    candidates = [s for s in services.values() if s.kind == kind and s.configured]
    for svc in candidates:
        if svc.active:
            return svc
    return candidates[0] if candidates else None


def _translate(svc: ServiceEndpoint, e: ServiceRequestError) -> Exception:
    msg = f'Service {svc.name}: {e}'
    if e.transient:
        return TransientExecutionError(msg, status=e.status)
    return NonRetryableExecutionError(msg, status=e.status)


async def _radarr_action(session, request, svc: ServiceEndpoint, action_type: str, external_id: str) -> str:
    args = (session, request, svc.name, svc.api_url, svc.api_key, external_id)
    if action_type == AUTO_DELETE:
        await rd_mod.radarr_delete_movie(*args)
        return 'deleted movie and files'
    if action_type == UNMONITOR_AND_KEEP:
        await rd_mod.radarr_unmonitor_movie(*args)
        return 'unmonitored movie'
    if action_type == UNMONITOR_AND_DELETE:
        await rd_mod.radarr_unmonitor_movie(*args)
        removed = await rd_mod.radarr_delete_movie_files(*args)
        return 'unmonitored movie, deleted files' if removed else 'unmonitored movie, no files to delete'
    raise NonRetryableExecutionError(f'Unsupported action {action_type} for movies')


async def _series_action(session, request, svc: ServiceEndpoint, action_type: str, external_id: str) -> str:
    args = (session, request, svc.name, svc.api_url, svc.api_key, external_id)
    if action_type == AUTO_DELETE:
        await so_mod.sonarr_delete_series(*args)
        return 'deleted series and files'
    if action_type == UNMONITOR_AND_KEEP:
        await so_mod.sonarr_unmonitor_series(*args)
        return 'unmonitored series'
    if action_type == UNMONITOR_AND_DELETE:
        await so_mod.sonarr_unmonitor_series(*args)
        file_ids = await so_mod.sonarr_series_file_ids(*args)
        await so_mod.sonarr_delete_episode_files(session, request, svc.name, svc.api_url, svc.api_key, file_ids)
        return f'unmonitored series, deleted {len(file_ids)} file(s)'
    raise NonRetryableExecutionError(f'Unsupported action {action_type} for series')


async def _episode_action(session, request, svc: ServiceEndpoint, action_type: str, external_id: str) -> str:
    base = (session, request, svc.name, svc.api_url, svc.api_key)
    if action_type == UNMONITOR_AND_KEEP:
        await so_mod.sonarr_unmonitor_episodes(*base, [external_id])
        return 'unmonitored episode'
    episode = await so_mod.sonarr_get_episode(*base, external_id)
    if episode is None:
        raise NonRetryableExecutionError(f'Service {svc.name}: episode {external_id} not found', status=404)
    if action_type == UNMONITOR_AND_DELETE:
        await so_mod.sonarr_unmonitor_episodes(*base, [external_id])
    elif action_type != AUTO_DELETE:
        raise NonRetryableExecutionError(f'Unsupported action {action_type} for episodes')
    # Episodes only exist as files; deleting the file is the delete
    file_id = episode.get('episodeFileId')
    if episode.get('hasFile') and file_id:
        await so_mod.sonarr_delete_episode_files(*base, [file_id])
        return 'deleted episode file' if action_type == AUTO_DELETE else 'unmonitored episode, deleted file'
    return 'episode has no file'


_DISPATCH = {
    MOVIE: _radarr_action,
    TV_SERIES: _series_action,
    EPISODE: _episode_action,
}


async def perform_action(
    session: aiohttp.ClientSession,
    request: RequestFn,
    services: Dict[str, ServiceEndpoint],
    media_type: str,
    service_id: Optional[str],
    action_type: str,
    external_id: str,
) -> str:
    """Run one library action; raises Transient/NonRetryableExecutionError on failure."""
    kind = KIND_FOR_MEDIA.get(media_type)
    svc = resolve_service(services, kind, service_id) if kind else None
    if svc is None:
        raise NonRetryableExecutionError(
            f'No configured {kind or "library"} service for {media_type}'
            + (f' named {service_id!r}' if service_id else '')
        )
    try:
        return await _DISPATCH[media_type](session, request, svc, action_type, external_id)
    except ServiceRequestError as e:
        raise _translate(svc, e) from e
