from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp


# request(session, service_name, url, api_key, *, params=None, json_data=None, method='get', raise_errors=False)
RequestFn = Callable[..., Awaitable[Any]]


async def radarr_list_movies(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
) -> Optional[List[Dict[str, Any]]]:
    data = await request(session, service_name, f'{api_url}/movie', api_key)
    return data if isinstance(data, list) else None


async def radarr_get_movie(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    movie_id: Any,
    *,
    raise_errors: bool = False,
) -> Optional[Dict[str, Any]]:
    data = await request(session, service_name, f'{api_url}/movie/{movie_id}', api_key, raise_errors=raise_errors)
    return data if isinstance(data, dict) and 'id' in data else None


async def radarr_delete_movie(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    movie_id: Any,
) -> None:
    await request(
        session,
        service_name,
        f'{api_url}/movie/{movie_id}',
        api_key,
        params={'deleteFiles': 'true', 'addImportExclusion': 'false'},
        method='delete',
        raise_errors=True,
    )


async def radarr_unmonitor_movie(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    movie_id: Any,
) -> None:
    await request(
        session,
        service_name,
        f'{api_url}/movie/editor',
        api_key,
        json_data={'movieIds': [int(movie_id)], 'monitored': False},
        method='put',
        raise_errors=True,
    )


async def radarr_delete_movie_files(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    api_url: str,
    api_key: str,
    movie_id: Any,
) -> bool:
    """Delete the movie's file but keep the library entry. False when there was no file."""
    movie = await radarr_get_movie(session, request, service_name, api_url, api_key, movie_id, raise_errors=True)
    movie_file = (movie or {}).get('movieFile') or {}
    file_id = movie_file.get('id') if isinstance(movie_file, dict) else None
    if not file_id:
        return False
    await request(
        session,
        service_name,
        f'{api_url}/moviefile/{file_id}',
        api_key,
        method='delete',
        raise_errors=True,
    )
    return True
