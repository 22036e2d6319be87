"""
Call lifecycle: placing calls, reconciling carrier status callbacks, and
tearing calls down.

A call ends through exactly one `finalize()`, whatever triggered it (carrier
terminal status, manual termination, timeout exhaustion, the customer-done
close). Finalizing archives the transcript once, notifies observers, and
removes the session either immediately or after a grace window so late reads
(dashboard polls, a trailing status callback) still find it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import structlog

from src.sales_agent.analysis import CallAnalysis
from src.sales_agent.archive import CallMetadata, TranscriptArchive
from src.sales_agent.carrier import TwilioCarrier, WebhookUrls
from src.sales_agent.config import get_config
from src.sales_agent.errors import CarrierError
from src.sales_agent.events import CALL_COMPLETED, CALL_STATUS, ORDER_UPDATE, EventBroadcaster
from src.sales_agent.llm import get_system_context
from src.sales_agent.performance import LatencyTracker
from src.sales_agent.session import (
    CallSession,
    CallStatus,
    CustomerProfile,
    SessionStore,
    TurnState,
)

logger = structlog.get_logger(__name__)

# Carrier status -> session status. None means "report it, but don't change status".
CARRIER_STATUS_MAP: Dict[str, Optional[CallStatus]] = {
    "queued": None,
    "initiated": CallStatus.INITIATED,
    "ringing": None,
    "answered": CallStatus.CONNECTED,
    "in-progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "busy": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
}


class CallLifecycleManager:
    def __init__(
        self,
        *,
        store: SessionStore,
        carrier: TwilioCarrier,
        archive: TranscriptArchive,
        broadcaster: EventBroadcaster,
        urls: WebhookUrls,
        latency: Optional[LatencyTracker] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.latency = latency or LatencyTracker()
        self.store = store
        self.carrier = carrier
        self.archive = archive
        self.broadcaster = broadcaster
        self.urls = urls
        self.grace_seconds = self.config.session_grace_seconds
        self._destroy_handles: Dict[str, asyncio.TimerHandle] = {}

    async def start_call(
        self,
        phone_number: str,
        context: Optional[str] = None,
        profile: Optional[CustomerProfile] = None,
    ) -> CallSession:
        """
        Create a session and dial the customer.

        Raises:
            ValueError: if no phone number is given
            CarrierError: if the carrier refuses the call (the session is removed)
        """
        phone_number = (phone_number or "").strip()
        if not phone_number:
            raise ValueError("Phone number is required")

        call_id = self.store.new_call_id()
        system_context = (context or "").strip() or get_system_context(self.config, profile)
        session = self.store.create(
            call_id,
            system_context,
            phone_number=phone_number,
            profile=profile,
        )

        try:
            with self.latency.measure("twilio", "place_call"):
                carrier_ref = await self.carrier.place_call(phone_number, self.urls.callbacks(call_id))
        except CarrierError:
            self.store.destroy(call_id)
            raise

        session.carrier_call_ref = carrier_ref
        logger.info(
            "Call placed",
            call_id=call_id,
            call_sid=carrier_ref,
            phone_last4=phone_number[-4:],
        )
        self.broadcaster.publish(CALL_STATUS, call_id, {
            "status": CallStatus.INITIATED.value,
            "phoneNumber": phone_number,
            "carrierCallRef": carrier_ref,
            "message": "Call initiated...",
        })
        return session

    def handle_status(self, carrier_call_ref: str, carrier_status: str) -> Optional[CallSession]:
        """Apply a carrier status callback; unknown calls are ignored."""
        carrier_status = (carrier_status or "").strip().lower()
        session = self.store.find_by_carrier_ref(carrier_call_ref)
        if session is None:
            logger.info("Status for unknown call", call_sid=carrier_call_ref, status=carrier_status)
            return None

        if carrier_status not in CARRIER_STATUS_MAP:
            logger.warning("Unrecognized carrier status", call_id=session.call_id, status=carrier_status)
            return session

        new_status = CARRIER_STATUS_MAP[carrier_status]
        if session.status.is_terminal:
            logger.debug("Status after terminal state ignored", call_id=session.call_id, status=carrier_status)
            return session

        if new_status is not None:
            session.status = new_status
        logger.info("Call status update", call_id=session.call_id, status=carrier_status)

        self.broadcaster.publish(CALL_STATUS, session.call_id, {
            "status": new_status.value if new_status else carrier_status,
            "carrierStatus": carrier_status,
            "phoneNumber": session.phone_number,
            "message": f"Call {carrier_status}",
        })

        if session.status.is_terminal:
            self.finalize(session.call_id, reason=f"carrier_{carrier_status}")
        return session

    async def terminate_call(self, call_id: str) -> Optional[str]:
        """
        Hang up a call on request of the dashboard.

        The session is archived and removed even when the carrier refuses the
        hangup; the `CarrierError` is re-raised afterwards.

        Raises:
            NotFoundError: if the call is not tracked
            CarrierError: if the carrier hangup failed
        """
        session = self.store.require(call_id)
        carrier_error: Optional[CarrierError] = None

        if session.carrier_call_ref and not session.status.is_terminal:
            try:
                with self.latency.measure("twilio", "terminate_call"):
                    await self.carrier.terminate_call(session.carrier_call_ref)
            except CarrierError as e:
                carrier_error = e

        if not session.status.is_terminal:
            session.status = CallStatus.COMPLETED
        artifact_id = self.finalize(call_id, reason="manual_termination", destroy_delay=0)

        if carrier_error is not None:
            raise carrier_error
        return artifact_id

    def finalize(
        self,
        call_id: str,
        reason: str,
        *,
        destroy_delay: Optional[float] = None,
    ) -> Optional[str]:
        """
        End a call: archive once, notify observers, schedule removal.

        Returns the archive artifact id (None if the call is unknown or
        archiving failed).
        """
        session = self.store.get(call_id)
        if session is None:
            return None

        # Invalidate any in-flight turn for this call.
        session.begin_event()
        if not session.is_terminated:
            session.transition(TurnState.TERMINATED)

        if not session.archived:
            session.archived = True
            try:
                session.artifact_id = self.archive.persist(
                    call_id,
                    session.history,
                    session.order,
                    CallMetadata.from_session(session, reason=reason),
                )
            except OSError:
                logger.exception("Error saving conversation history", call_id=call_id)

            if session.order.lines:
                self.broadcaster.publish(ORDER_UPDATE, call_id, {
                    "orderDetails": session.order.to_dict(),
                    "final": True,
                })
            self.broadcaster.publish(CALL_COMPLETED, call_id, {
                "reason": reason,
                "status": session.status.value,
                "duration": round(session.duration_seconds, 1),
                "artifactId": session.artifact_id,
                "orderDetails": session.order.to_dict(),
            })
            logger.info(
                "Call finalized",
                call_id=call_id,
                reason=reason,
                status=session.status.value,
                artifact_id=session.artifact_id,
            )

        self.schedule_destroy(call_id, self.grace_seconds if destroy_delay is None else destroy_delay)
        return session.artifact_id

    def record_analysis(self, call_id: str, analysis: CallAnalysis) -> Optional[str]:
        """Archive the call again with its analysis attached; None if the call is gone."""
        session = self.store.get(call_id)
        if session is None:
            return None
        artifact_id = self.archive.persist(
            call_id,
            session.history,
            session.order,
            CallMetadata.from_session(session, reason="analysis"),
            analysis,
        )
        return artifact_id

    def schedule_destroy(self, call_id: str, delay: float) -> None:
        if delay <= 0:
            self._destroy(call_id)
            return
        if call_id in self._destroy_handles:
            return
        loop = asyncio.get_running_loop()
        self._destroy_handles[call_id] = loop.call_later(delay, self._destroy, call_id)
        logger.debug("Session removal scheduled", call_id=call_id, delay_seconds=delay)

    def _destroy(self, call_id: str) -> None:
        handle = self._destroy_handles.pop(call_id, None)
        if handle is not None:
            handle.cancel()
        self.store.destroy(call_id)

    @property
    def pending_removals(self) -> int:
        return len(self._destroy_handles)

    def shutdown(self) -> None:
        """Cancel removal timers (sessions die with the process anyway)."""
        for handle in self._destroy_handles.values():
            handle.cancel()
        self._destroy_handles.clear()
