from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp


class RemoteRequestError(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class RequestManager:
    def __init__(self) -> None:
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        method: str = 'get',
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        request_timeout: float = 30,
        debug_logging: bool = False,
    ):
        # Rate limit by elapsed time between calls
        if min_interval_ms and min_interval_ms > 0:
            last = self._service_last_request_at.get(service_name, 0.0)
            now = asyncio.get_event_loop().time()
            wait = (last + (min_interval_ms / 1000.0)) - now
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = asyncio.get_event_loop().time()

        kwargs = dict(
            headers=headers,
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=request_timeout,
            debug_logging=debug_logging,
        )
        # Limit concurrency per service
        if max_concurrent and max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, **kwargs)
        return await make_api_request(session, url, **kwargs)


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_data: Optional[Dict[str, Any]] = None,
    method: str = 'get',
    request_timeout: float = 30,
    debug_logging: bool = False,
):
    # Single attempt; callers see every failure as RemoteRequestError
    try:
        timeout = aiohttp.ClientTimeout(total=request_timeout)
        async with session.request(method, url, headers=headers, params=params, json=json_data, timeout=timeout) as response:
            response.raise_for_status()
            content_type = response.headers.get('Content-Type', '')
            if response.status != 204 and 'application/json' in content_type:
                try:
                    return await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    # Fall back to status on empty/malformed body
                    pass
            if debug_logging:
                logging.info(f'HTTP {method.upper()} {url} -> {response.status} (no JSON content)')
            return {'status': response.status}
    except aiohttp.ClientResponseError as e:
        raise RemoteRequestError(
            f'HTTP {method.upper()} {url} error {e.status}: {e.message}', status=e.status, url=url
        ) from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        kind = 'timeout' if isinstance(e, asyncio.TimeoutError) else 'network error'
        raise RemoteRequestError(f'HTTP {method.upper()} {url} {kind}: {e}', url=url) from e
