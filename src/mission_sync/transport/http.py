"""HTTP adapter for the board API, built on aiohttp"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

import aiohttp

from ..models.entities import EntityKind, coerce_kind
from ..utils.config import ServerConfig
from ..utils.errors import MutationRejectedError, TransientNetworkError
from ..utils.logging import get_logger

logger = get_logger("mission-sync.api")


class BoardApiClient:
    """Client for the consumed endpoints: collections, task/agent patch, status probe, push stream

    Network failures and non-success statuses on reads are raised as
    ``TransientNetworkError``. A non-success status on a mutation is raised as
    ``MutationRejectedError`` so the optimistic write is rolled back.
    """

    def __init__(self, config: Optional[ServerConfig] = None, events_limit: int = 20,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = config or ServerConfig()
        self.events_limit = events_limit
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.config.headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BoardApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    def _collection_path(self, kind: EntityKind) -> str:
        return {
            EntityKind.TASKS: self.config.tasks_path,
            EntityKind.AGENTS: self.config.agents_path,
            EntityKind.EVENTS: self.config.events_path,
        }[kind]

    def _request_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.request_timeout)

    async def fetch_collection(self, kind: Union[EntityKind, str]) -> List[Dict[str, Any]]:
        """GET the complete collection for a kind (events: the recent window)."""
        kind = coerce_kind(kind)
        if kind is EntityKind.EVENTS:
            params = {"limit": str(self.events_limit)}
        else:
            params = {"workspace_id": self.config.workspace_id}

        url = self._url(self._collection_path(kind))
        try:
            async with self.session.get(url, params=params, timeout=self._request_timeout()) as response:
                if response.status >= 400:
                    raise TransientNetworkError(f"GET {url} returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"GET {url} failed: {e}", cause=e) from e
        except ValueError as e:
            raise TransientNetworkError(f"GET {url} returned invalid JSON", cause=e) from e

        if not isinstance(data, list):
            raise TransientNetworkError(f"GET {url} returned {type(data).__name__}, expected a list")

        logger.debug("collection_fetched", kind=kind.value, count=len(data))
        return data

    async def patch_entity(
        self,
        kind: Union[EntityKind, str],
        entity_id: str,
        patch: Mapping[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """PATCH one entity; returns the canonical entity or None for an empty body."""
        kind = coerce_kind(kind)
        url = self._url(f"{self._collection_path(kind)}/{entity_id}")

        try:
            async with self.session.patch(url, json=dict(patch), timeout=self._request_timeout()) as response:
                if response.status >= 400:
                    detail = await self._error_detail(response)
                    logger.warning("mutation_rejected", kind=kind.value, entity_id=entity_id,
                                   status=response.status, detail=detail)
                    raise MutationRejectedError(response.status, detail)
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"PATCH {url} failed: {e}", cause=e) from e

        if not body.strip():
            return None
        try:
            data = json.loads(body)
        except ValueError:
            logger.warning("mutation_response_not_json", kind=kind.value, entity_id=entity_id)
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    async def _error_detail(response: aiohttp.ClientResponse) -> Optional[str]:
        try:
            text = await response.text()
        except (aiohttp.ClientError, UnicodeDecodeError):
            return None
        if not text:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return text[:200]
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or text[:200])
        return text[:200]

    async def probe(self) -> bool:
        """GET the gateway status endpoint and return its ``connected`` flag."""
        url = self._url(self.config.status_path)
        try:
            async with self.session.get(url, timeout=self._request_timeout()) as response:
                if response.status >= 400:
                    raise TransientNetworkError(f"GET {url} returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Probe failed: {e}", cause=e) from e
        except ValueError as e:
            raise TransientNetworkError("Probe returned invalid JSON", cause=e) from e

        if isinstance(data, dict):
            return bool(data.get("connected"))
        return bool(data)

    @asynccontextmanager
    async def open_stream(self) -> AsyncIterator[AsyncIterator[str]]:
        """Open the push stream; yields an async iterator of decoded lines."""
        url = self._url(self.config.stream_path)
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.config.request_timeout)
        headers = {"Accept": "text/event-stream, application/x-ndjson"}

        try:
            response = await self.session.get(url, headers=headers, timeout=timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Stream connect failed: {e}", cause=e) from e

        try:
            if response.status >= 400:
                raise TransientNetworkError(f"Stream endpoint returned HTTP {response.status}")
            logger.info("stream_opened", url=url, content_type=response.content_type)
            yield self._iter_lines(response)
        finally:
            response.close()

    @staticmethod
    async def _iter_lines(response: aiohttp.ClientResponse) -> AsyncIterator[str]:
        try:
            async for raw in response.content:
                yield raw.decode("utf-8", errors="replace")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Stream read failed: {e}", cause=e) from e


__all__ = ['BoardApiClient']
