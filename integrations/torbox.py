from __future__ import annotations

from typing import Any, Dict, List, Optional

import aiohttp

from integrations.services import RemoteRequestError, RequestManager, make_api_request


DEFAULT_API_BASE = 'https://api.torbox.app'
DEFAULT_API_VERSION = 'v1'
DEFAULT_USER_AGENT = 'TorBoxAutomationWorker/1.0'


class TorBoxClient:
    """Per-user TorBox API client.

    Every call carries the user's bearer token and the same total timeout.
    Failures raise ``RemoteRequestError``; nothing is retried here.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        *,
        base_url: str = DEFAULT_API_BASE,
        api_version: str = DEFAULT_API_VERSION,
        request_timeout: float = 30,
        user_agent: str = DEFAULT_USER_AGENT,
        request_manager: Optional[RequestManager] = None,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        debug_logging: bool = False,
    ) -> None:
        self.session = session
        self.api_key = api_key
        self.base_url = f"{base_url.rstrip('/')}/{api_version.strip('/')}"
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.request_manager = request_manager
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self.debug_logging = debug_logging

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'User-Agent': self.user_agent,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f'{self.base_url}{path}'
        kwargs = dict(
            headers=self.headers,
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=self.request_timeout,
            debug_logging=self.debug_logging,
        )
        if self.request_manager is not None:
            body = await self.request_manager.throttled_request(
                self.session,
                'torbox',
                url,
                min_interval_ms=self.min_interval_ms,
                max_concurrent=self.max_concurrent,
                **kwargs,
            )
        else:
            body = await make_api_request(self.session, url, **kwargs)
        if isinstance(body, dict) and body.get('success') is False:
            detail = body.get('detail') or body.get('error') or 'request rejected'
            raise RemoteRequestError(f'TorBox {method.upper()} {path} failed: {detail}', url=url)
        return body.get('data') if isinstance(body, dict) and 'data' in body else body

    async def get_torrents(self) -> List[Dict[str, Any]]:
        data = await self._request('get', '/api/torrents/mylist', params={'bypass_cache': 'true'})
        return data if isinstance(data, list) else []

    async def get_queued(self) -> List[Dict[str, Any]]:
        data = await self._request(
            'get', '/api/queued/getqueued', params={'type': 'torrent', 'bypass_cache': 'true'}
        )
        return data if isinstance(data, list) else []

    async def control_torrent(self, torrent_id: Any, operation: str) -> Any:
        return await self._request(
            'post',
            '/api/torrents/controltorrent',
            json_data={'torrent_id': torrent_id, 'operation': operation},
        )

    async def control_queued(self, queued_id: Any, operation: str) -> Any:
        return await self._request(
            'post',
            '/api/queued/controlqueued',
            json_data={'queued_id': queued_id, 'operation': operation, 'type': 'torrent'},
        )
