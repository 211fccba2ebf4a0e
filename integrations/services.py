from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, Optional

import aiohttp


class ServiceRequestError(Exception):
    """Raised by make_api_request(raise_errors=True) once retries are exhausted."""

    def __init__(self, message: str, status: Optional[int] = None, transient: bool = False) -> None:
        self.status = status
        self.transient = transient
        super().__init__(message)


def is_transient_status(status: Optional[int]) -> bool:
    return bool(status) and (500 <= status < 600 or status == 429)


class RequestManager:
    """Per-service throttling: a minimum interval between calls and a concurrency cap."""

    def __init__(self) -> None:
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        api_key: Optional[str],
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        method: str = 'get',
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        request_timeout: float = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        raise_errors: bool = False,
        debug_logging: bool = False,
    ):
        # Rate limit by elapsed time between calls
        if min_interval_ms and min_interval_ms > 0:
            loop = asyncio.get_running_loop()
            last = self._service_last_request_at.get(service_name, 0.0)
            wait = (last + (min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = loop.time()

        kwargs = dict(
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=request_timeout,
            retry_attempts=retry_attempts,
            retry_backoff=retry_backoff,
            raise_errors=raise_errors,
            debug_logging=debug_logging,
        )
        # Limit concurrency per service
        if max_concurrent and max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, api_key, **kwargs)
        return await make_api_request(session, url, api_key, **kwargs)


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: Optional[str],
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Any = None,
    method: str = 'get',
    request_timeout: float = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    raise_errors: bool = False,
    debug_logging: bool = False,
):
    """Issue one HTTP call, retrying 5xx/429 and network failures with jittered backoff.

    Returns the decoded JSON body, or ``{'status': code}`` for empty bodies.
    On failure returns None, or raises ServiceRequestError when
    ``raise_errors`` is set.
    """
    import logging

    headers = {'X-Api-Key': api_key} if api_key else {}
    attempts = 0
    while True:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, headers=headers, params=params, json=json_data, timeout=timeout) as response:
                response.raise_for_status()
                content_type = response.headers.get('Content-Type', '')
                if response.status != 204 and 'application/json' in content_type:
                    try:
                        return await response.json()
                    except Exception:
                        # Fall back to status on empty/malformed body
                        pass
                if debug_logging:
                    logging.info(f'HTTP {method.upper()} {url} -> {response.status} (no content)')
                return {'status': response.status}
        except aiohttp.ClientResponseError as e:
            transient = is_transient_status(e.status)
            if transient and attempts < retry_attempts:
                attempts += 1
                sleep_for = retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} error {e.status}: {e.message}')
            if raise_errors:
                raise ServiceRequestError(f'HTTP {e.status}: {e.message}', status=e.status, transient=transient) from e
            return None
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} network/timeout: {e!r}')
            if raise_errors:
                raise ServiceRequestError(f'network/timeout: {e!r}', transient=True) from e
            return None
        except aiohttp.ClientError as e:
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} unexpected error: {e!r}')
            if raise_errors:
                raise ServiceRequestError(f'client error: {e!r}') from e
            return None
