"""
Twilio REST client for outbound training calls.

Only the one operation the trainer needs: create a call whose answer URL
points back at our TwiML route. Uses a shared aiohttp session with HTTP basic
auth, the same way the ARI client talks to Asterisk.
"""

import asyncio
from typing import Callable, Optional

import aiohttp

from call_trainer.config import TwilioConfig
from call_trainer.errors import UpstreamAuthError, UpstreamUnavailableError
from call_trainer.logging_config import get_logger

logger = get_logger(__name__)

SERVICE = "twilio"


class TwilioClient:
    """Creates outbound calls through the Twilio Calls API."""

    def __init__(
        self,
        config: TwilioConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

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

    async def create_call(self, to: str, twiml_url: str) -> str:
        """
        Place an outbound call.

        Args:
            to: Destination number (E.164)
            twiml_url: URL Twilio fetches when the call is answered

        Returns:
            The call SID assigned by Twilio

        Raises:
            UpstreamAuthError: credentials missing or rejected (401/403)
            UpstreamUnavailableError: any other rejection, network failure or timeout
        """
        account_sid = self.config.account_sid
        if not account_sid or not self.config.auth_token or not self.config.phone_number:
            raise UpstreamAuthError("Twilio credentials are not configured", service=SERVICE)

        url = f"{self.config.api_base_url.rstrip('/')}/Accounts/{account_sid}/Calls.json"
        form = {
            "To": to,
            "From": self.config.phone_number,
            "Url": twiml_url,
        }
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_sec)

        logger.info("Creating outbound call", to=to, twiml_url=twiml_url)
        try:
            async with session.post(
                url,
                data=form,
                auth=aiohttp.BasicAuth(account_sid, self.config.auth_token),
                timeout=timeout,
            ) as response:
                if response.status >= 400:
                    detail = await self._error_detail(response)
                    logger.error(
                        "Twilio rejected call creation",
                        status=response.status,
                        detail=detail,
                    )
                    if response.status in (401, 403):
                        raise UpstreamAuthError(detail, status=response.status, service=SERVICE)
                    raise UpstreamUnavailableError(detail, status=response.status, service=SERVICE)
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error("Twilio call creation failed", error=str(e))
            raise UpstreamUnavailableError(f"Twilio request failed: {e}", service=SERVICE)
        except asyncio.TimeoutError:
            logger.error("Twilio call creation timed out")
            raise UpstreamUnavailableError("Twilio request timed out", service=SERVICE)
        except ValueError:
            raise UpstreamUnavailableError("Twilio returned a non-JSON response", service=SERVICE)

        call_sid = (data or {}).get("sid")
        if not call_sid:
            raise UpstreamUnavailableError("Twilio response did not include a call sid", service=SERVICE)
        logger.info("Outbound call created", call_id=call_sid, status=data.get("status"))
        return call_sid

    @staticmethod
    async def _error_detail(response: aiohttp.ClientResponse) -> str:
        body = await response.text()
        try:
            payload = await response.json(content_type=None)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            code = payload.get("code")
            return f"{payload['message']} (code {code})" if code else str(payload["message"])
        return f"Twilio responded with status {response.status}: {body[:200]}"
