"""
Twilio adapter for placing and ending calls.

The Twilio REST client is synchronous, so every request runs in a worker
thread. Failures surface as `CarrierError` carrying Twilio's error code.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import structlog
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from src.sales_agent.config import get_config
from src.sales_agent.errors import CarrierError

logger = structlog.get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]
RING_TIMEOUT_SECONDS = 60


def _more_info(error: TwilioRestException) -> str:
    return f"https://www.twilio.com/docs/errors/{error.code}" if error.code else ""


@dataclass(frozen=True)
class CallbackUrls:
    connected_url: str
    status_url: str


class WebhookUrls:
    """Absolute URLs of the voice webhooks, keyed by call id."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def _with_call(self, path: str, call_id: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'callId': call_id})}"

    def connected(self, call_id: str) -> str:
        return self._with_call("/api/voice/incoming", call_id)

    def process_speech(self, call_id: str) -> str:
        return self._with_call("/api/voice/process-speech", call_id)

    def partial_speech(self, call_id: str) -> str:
        return self._with_call("/api/voice/partial-speech", call_id)

    def timeout(self, call_id: str) -> str:
        return self._with_call("/api/voice/timeout", call_id)

    def status(self) -> str:
        return f"{self.base_url}/api/voice/status"

    def callbacks(self, call_id: str) -> CallbackUrls:
        return CallbackUrls(connected_url=self.connected(call_id), status_url=self.status())


class TwilioCarrier:
    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        self.config = config or get_config()
        self._client = client or TwilioClient(
            self.config.twilio_account_sid,
            self.config.twilio_auth_token,
        )

    @property
    def from_number(self) -> str:
        return self.config.twilio_phone_number

    async def place_call(self, destination: str, callbacks: CallbackUrls) -> str:
        """Dial `destination`; returns the carrier call reference (Call SID)."""

        def _create() -> Any:
            return self._client.calls.create(
                to=destination,
                from_=self.from_number,
                url=callbacks.connected_url,
                method="POST",
                status_callback=callbacks.status_url,
                status_callback_method="POST",
                status_callback_event=STATUS_CALLBACK_EVENTS,
                timeout=RING_TIMEOUT_SECONDS,
                record=False,
            )

        try:
            call = await asyncio.to_thread(_create)
        except TwilioRestException as e:
            logger.error("Twilio call creation failed", code=e.code, status=e.status, error=e.msg)
            raise CarrierError(f"Failed to make call: {e.msg}", code=e.code, more_info=_more_info(e)) from e
        except TwilioException as e:
            logger.error("Twilio call creation failed", error=str(e))
            raise CarrierError(f"Failed to make call: {e}") from e

        logger.info("Twilio call created", call_sid=call.sid, status=call.status)
        return call.sid

    async def terminate_call(self, carrier_call_ref: str) -> None:
        """Ask Twilio to end an in-progress call."""
        if not carrier_call_ref:
            raise CarrierError("No active carrier call to terminate")

        def _hangup() -> Any:
            return self._client.calls(carrier_call_ref).update(status="completed")

        try:
            await asyncio.to_thread(_hangup)
        except TwilioRestException as e:
            logger.error("Failed to hang up call", call_sid=carrier_call_ref, code=e.code, error=e.msg)
            raise CarrierError(f"Failed to terminate call: {e.msg}", code=e.code, more_info=_more_info(e)) from e
        except TwilioException as e:
            logger.error("Failed to hang up call", call_sid=carrier_call_ref, error=str(e))
            raise CarrierError(f"Failed to terminate call: {e}") from e

        logger.info("Call hung up", call_sid=carrier_call_ref)

    async def _list_numbers(self, list_fn: Callable[[], Any], what: str) -> List[Dict[str, str]]:
        try:
            records = await asyncio.to_thread(list_fn)
        except TwilioException as e:
            logger.warning("Could not list Twilio numbers", what=what, error=str(e))
            return []
        return [{"phoneNumber": r.phone_number, "friendlyName": r.friendly_name} for r in records]

    async def account_status(self) -> Dict[str, Any]:
        """
        Account details plus the numbers it can call from (trial accounts can
        only dial verified caller IDs).

        Raises:
            CarrierError: if the account itself cannot be fetched
        """

        def _fetch() -> Any:
            return self._client.api.v2010.accounts(self.config.twilio_account_sid).fetch()

        try:
            account = await asyncio.to_thread(_fetch)
        except TwilioRestException as e:
            logger.error("Twilio account lookup failed", code=e.code, error=e.msg)
            raise CarrierError(f"Failed to check Twilio status: {e.msg}", code=e.code, more_info=_more_info(e)) from e
        except TwilioException as e:
            logger.error("Twilio account lookup failed", error=str(e))
            raise CarrierError(f"Failed to check Twilio status: {e}") from e

        return {
            "account": {
                "sid": account.sid,
                "friendlyName": account.friendly_name,
                "status": account.status,
                "type": account.type,
            },
            "verifiedNumbers": await self._list_numbers(self._client.outgoing_caller_ids.list, "verified caller ids"),
            "twilioNumbers": await self._list_numbers(self._client.incoming_phone_numbers.list, "phone numbers"),
            "fromNumber": self.from_number,
        }
