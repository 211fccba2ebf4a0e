from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp


RequestFn = Callable[..., Awaitable[Any]]


async def sonarr_list_series(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
) -> Optional[List[Dict[str, Any]]]:
    data = await request(session, service_name, f'{api_url}/series', api_key)
    return data if isinstance(data, list) else None


async def sonarr_get_series(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    series_id: Any,
    *,
    raise_errors: bool = False,
) -> Optional[Dict[str, Any]]:
    data = await request(session, service_name, f'{api_url}/series/{series_id}', api_key, raise_errors=raise_errors)
    return data if isinstance(data, dict) and 'id' in data else None


async def sonarr_list_episodes(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    series_id: Any,
    *,
    raise_errors: bool = False,
) -> Optional[List[Dict[str, Any]]]:
    data = await request(
        session,
        service_name,
        f'{api_url}/episode',
        api_key,
        params={'seriesId': str(series_id), 'includeEpisodeFile': 'true'},
        raise_errors=raise_errors,
    )
    return data if isinstance(data, list) else None


async def sonarr_get_episode(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    episode_id: Any,
) -> Optional[Dict[str, Any]]:
    data = await request(session, service_name, f'{api_url}/episode/{episode_id}', api_key, raise_errors=True)
    return data if isinstance(data, dict) and 'id' in data else None


async def sonarr_delete_series(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    series_id: Any,
) -> None:
    await request(
        session,
        service_name,
        f'{api_url}/series/{series_id}',
        api_key,
        params={'deleteFiles': 'true', 'addImportListExclusion': 'false'},
        method='delete',
        raise_errors=True,
    )


async def sonarr_unmonitor_series(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    series_id: Any,
) -> None:
    await request(
        session,
        service_name,
        f'{api_url}/series/editor',
        api_key,
        json_data={'seriesIds': [int(series_id)], 'monitored': False},
        method='put',
        raise_errors=True,
    )


async def sonarr_unmonitor_episodes(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    episode_ids: List[Any],
) -> None:
    await request(
        session,
        service_name,
        f'{api_url}/episode/monitor',
        api_key,
        json_data={'episodeIds': [int(e) for e in episode_ids], 'monitored': False},
        method='put',
        raise_errors=True,
    )


async def sonarr_delete_episode_files(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    episode_file_ids: List[Any],
) -> None:
    ids = [int(f) for f in episode_file_ids if f]
    if not ids:
        return
    if len(ids) == 1:
        await request(
            session,
            service_name,
            f'{api_url}/episodefile/{ids[0]}',
            api_key,
            method='delete',
            raise_errors=True,
        )
        return
    await request(
        session,
        service_name,
        f'{api_url}/episodefile/bulk',
        api_key,
        json_data={'episodeFileIds': ids},
        method='delete',
        raise_errors=True,
    )


async def sonarr_series_file_ids(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    series_id: Any,
) -> List[int]:
    episodes = await sonarr_list_episodes(session, request, service_name, api_url, api_key, series_id, raise_errors=True) or []
    out = []
    for ep in episodes:
        fid = ep.get('episodeFileId')
        if ep.get('hasFile') and fid:
            out.append(int(fid))
    return sorted(set(out))
