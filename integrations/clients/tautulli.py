from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp


RequestFn = Callable[..., Awaitable[Any]]

# Large enough to fetch a whole library section in one call
PAGE_LENGTH = 100000


async def tautulli_command(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    base_url: str,
    api_key: str,
    cmd: str,
    **params: Any,
) -> Optional[Any]:
    """Run one Tautulli API command; returns ``response.data`` or None on failure."""
    query = {'apikey': api_key, 'cmd': cmd}
    query.update({k: str(v) for k, v in params.items() if v is not None})
    data = await request(session, service_name, f"{base_url.rstrip('/')}/api/v2", None, params=query)
    if not isinstance(data, dict):
        return None
    resp = data.get('response') or {}
    if not isinstance(resp, dict) or resp.get('result') != 'success':
        return None
    return resp.get('data')


async def tautulli_get_libraries(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    base_url: str,
    api_key: str,
) -> Optional[List[Dict[str, Any]]]:
    data = await tautulli_command(session, request, service_name, base_url, api_key, 'get_libraries')
    return data if isinstance(data, list) else None


async def tautulli_get_library_media_info(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    base_url: str,
    api_key: str,
    section_id: Any,
) -> Optional[List[Dict[str, Any]]]:
    data = await tautulli_command(
        session, request, service_name, base_url, api_key,
        'get_library_media_info', section_id=section_id, length=PAGE_LENGTH,
    )
    rows = data.get('data') if isinstance(data, dict) else None
    return rows if isinstance(rows, list) else None


async def tautulli_get_episode_history(
    session: aiohttp.ClientSession,
    request: RequestFn,
    service_name: str,
    base_url: str,
    api_key: str,
    section_id: Any = None,
) -> Optional[List[Dict[str, Any]]]:
    data = await tautulli_command(
        session, request, service_name, base_url, api_key,
        'get_history', media_type='episode', section_id=section_id, length=PAGE_LENGTH,
    )
    rows = data.get('data') if isinstance(data, dict) else None
    return rows if isinstance(rows, list) else None
