"""HTTP transport for tus exchanges, backed by aiohttp"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
from multidict import CIMultiDict

from tusupload.protocol import TusRequest
from tusupload.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class TransportResponse:
    """Completion of one HTTP exchange: a response, or the error that prevented one"""

    status: Optional[int] = None
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: bytes = b""
    error: Optional[BaseException] = None

    def __post_init__(self):
        if not isinstance(self.headers, CIMultiDict):
            self.headers = CIMultiDict(self.headers or {})

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300


class AiohttpTransport:
    """
    Executes TusRequest descriptors over a lazily created aiohttp session.

    execute() never raises for network trouble: timeouts and client errors come
    back as a TransportResponse with error set.
    """

    def __init__(self, timeout: float = 30.0, session: Optional[aiohttp.ClientSession] = None):
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                connector=aiohttp.TCPConnector(limit_per_host=3, limit=20),
            )
            self._owns_session = True
        return self._session

    async def execute(self, request: TusRequest) -> TransportResponse:
        """Send one request and collect its completion"""
        session = await self._get_session()
        logger.debug(f"{request.method} {request.url}")

        try:
            async with session.request(
                request.method,
                request.url,
                headers=request.headers,
                data=request.body,
                allow_redirects=False,
            ) as response:
                body = await response.read()
                return TransportResponse(
                    status=response.status,
                    headers=CIMultiDict(response.headers),
                    body=body,
                )
        except asyncio.TimeoutError as e:
            logger.warning(f"{request.method} {request.url} timed out after {self._timeout}s")
            return TransportResponse(error=e)
        except aiohttp.ClientError as e:
            logger.warning(f"{request.method} {request.url} failed: {e}")
            return TransportResponse(error=e)

    async def close(self):
        """Close the HTTP session if this transport created it"""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
