import asyncio

import pytest
from aioresponses import aioresponses
import aiohttp

from integrations.services import ServiceRequestError, make_api_request


pytestmark = pytest.mark.asyncio


async def _call(url, method='get', payload=None, **kw):
    async with aiohttp.ClientSession() as session:
        return await make_api_request(
            session,
            url,
            api_key="dummy",
            method=method,
            json_data=payload,
            retry_backoff=0.01,
            **kw,
        )


async def test_make_api_request_success_json():
    url = "http://radarr.local/api/v3/movie"
    with aioresponses() as m:
        m.get(url, payload=[{"id": 1}])
        resp = await _call(url)
        assert resp == [{"id": 1}]


async def test_make_api_request_success_no_content():
    url = "http://radarr.local/api/v3/movie/1"
    with aioresponses() as m:
        m.delete(url, status=204)
        resp = await _call(url, method='delete')
        assert resp == {"status": 204}


async def test_make_api_request_retries_then_success():
    url = "http://radarr.local/api/v3/retry"
    with aioresponses() as m:
        m.get(url, status=500)
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp == {"ok": True}


async def test_make_api_request_non_retriable_error():
    url = "http://radarr.local/api/v3/movie/404"
    with aioresponses() as m:
        m.get(url, status=404)
        resp = await _call(url)
        assert resp is None


async def test_make_api_request_timeout_retries():
    url = "http://radarr.local/api/v3/timeout"

    # Simulate a timeout followed by success
    with aioresponses() as m:
        m.get(url, exception=asyncio.TimeoutError())
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp == {"ok": True}


async def test_raise_errors_client_error_is_not_transient():
    url = "http://sonarr.local/api/v3/series/9"
    with aioresponses() as m:
        m.delete(url, status=404)
        with pytest.raises(ServiceRequestError) as exc:
            await _call(url, method='delete', raise_errors=True)
    assert exc.value.status == 404
    assert exc.value.transient is False


async def test_raise_errors_after_retries_is_transient():
    url = "http://sonarr.local/api/v3/series/9"
    with aioresponses() as m:
        m.delete(url, status=503)
        m.delete(url, status=503)
        with pytest.raises(ServiceRequestError) as exc:
            await _call(url, method='delete', raise_errors=True, retry_attempts=1)
    assert exc.value.status == 503
    assert exc.value.transient is True


async def test_raise_errors_network_failure_is_transient():
    url = "http://sonarr.local/api/v3/series"
    with aioresponses() as m:
        m.get(url, exception=aiohttp.ClientConnectionError('refused'))
        with pytest.raises(ServiceRequestError) as exc:
            await _call(url, raise_errors=True, retry_attempts=0)
    assert exc.value.transient is True
