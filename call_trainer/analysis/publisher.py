"""Delivers graded results to the analysis storage endpoint."""

import asyncio
from typing import Callable, Optional

import aiohttp

from call_trainer.analysis.schema import AnalysisResult
from call_trainer.config import ResultsConfig
from call_trainer.logging_config import get_logger
from call_trainer.metrics import PUBLISH_FAILURES

logger = get_logger(__name__)


class ResultPublisher:
    """
    POSTs each AnalysisResult to ``{endpoint}/api/analysis``.

    Failures are logged and counted, never raised; there is no retry.
    """

    def __init__(
        self,
        config: ResultsConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        return f"{self.config.endpoint.rstrip('/')}/api/analysis"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def publish(self, result: AnalysisResult, call_id: Optional[str] = None) -> bool:
        """Send one result. Returns True when the endpoint accepted it."""
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        logger.info("Sending analysis to storage endpoint", call_id=call_id, url=self.url)
        try:
            async with session.post(self.url, json=result.to_payload(), timeout=timeout) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        "Storage endpoint rejected analysis",
                        call_id=call_id,
                        status=response.status,
                        body_preview=body[:128],
                    )
                    PUBLISH_FAILURES.inc()
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Error sending analysis to storage endpoint", call_id=call_id, error=str(e) or type(e).__name__)
            PUBLISH_FAILURES.inc()
            return False
        logger.info("Analysis delivered", call_id=call_id, scenario_id=result.scenario_id)
        return True
