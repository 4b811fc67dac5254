"""
Participant side of the handshake.

A participant owns a microphone. It joins a session with one request
record, marks it ready when the user asks for a round, and from then on
reacts to what the coordinator writes:

    emitting  -> acquire (or clear) the microphone, report listening
    submitted -> stop, analyse, write detectedPattern + diagnosticData
    verified / failed -> report the outcome, release the microphone
    deleted   -> session ended, back to idle

Every state change happens on one worker task. Store notifications, user
commands and timer expiries are all events on its queue.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from comms import EventSink, NullEventSink, log_outcome
from config import (
    RESPONSE_TIMEOUT_S, READY_TIMEOUT_S, MIC_READY_WAIT_S, MIC_READY_POLL_MS,
    MAX_ROUND_ATTEMPTS, NUM_PULSES
)
from dsp_pipeline import SpectralDetector, detected_pattern
from patterns import Outcome, Pattern, VerificationResult, classify_outcome, pattern_to_string
from records import (
    ColocationError, EmitterConfig, HardwareAcquisitionError, InvalidTransitionError,
    ParticipantRequest, Status, StoreWriteError, round_reset_fields
)
from store import SharedStateStore


class Phase(str, Enum):
    """Local view of the round, independent of the stored status."""
    IDLE = "idle"              # No request record
    WAITING = "waiting"        # Joined, no round requested
    READY = "ready"
    LISTENING = "listening"
    SUBMITTING = "submitting"
    VERIFIED = "verified"
    FAILED = "failed"
    ERROR = "error"            # Needs a manual retry


@dataclass
class RoundOutcome:
    outcome: Outcome
    match_count: int = 0
    attempts: int = 1
    cause: Optional[str] = None
    request_id: Optional[str] = None
    detected_pattern: Optional[Pattern] = None

    @property
    def passed(self) -> bool:
        return self.outcome == Outcome.PASSED


class ParticipantSession:
    """
    One participant device in one session.

    Usage:
        participant = ParticipantSession(store, session_id, "alice", mic)
        await participant.join()
        outcome = await participant.run_round()
        await participant.leave()
    """

    def __init__(self, store: SharedStateStore, session_id: str, participant_id: str,
                 input_device, config: Optional[EmitterConfig] = None,
                 sink: Optional[EventSink] = None, display_name: str = ""):
        self.store = store
        self.session_id = session_id
        self.participant_id = participant_id
        self.input_device = input_device
        self.config = config or EmitterConfig()
        self.sink = sink or NullEventSink()
        self.display_name = display_name or participant_id

        self.phase = Phase.IDLE
        self.request_id: Optional[str] = None
        self.detector: Optional[SpectralDetector] = None
        self.last_outcome: Optional[RoundOutcome] = None
        self.submissions = 0

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._unsubscribe = None
        self._outcome: Optional[asyncio.Future] = None

        self._round = 0
        self._attempts = 0
        self._has_submitted = False
        self._mic_ready = False
        self._listening_batch: Optional[str] = None
        self._ready_timer: Optional[asyncio.TimerHandle] = None
        self._response_timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------ public API

    async def join(self) -> str:
        """
        Create this participant's request record and start watching it.

        Returns:
            The request id
        """
        if self.request_id is not None:
            return self.request_id

        request = ParticipantRequest(
            id=uuid.uuid4().hex,
            session_id=self.session_id,
            participant_id=self.participant_id,
            display_name=self.display_name,
            config=self.config,
        )
        self.request_id = await self.store.create(request.to_record())
        self.phase = Phase.WAITING
        self._worker = asyncio.create_task(self._run_worker())
        self._unsubscribe = self.store.subscribe(self.request_id, self._on_record)
        self.sink.info("queue", f"Joined session {self.session_id} as {self.request_id[:8]}")
        return self.request_id

    async def request_round(self) -> None:
        """
        Mark the request ready for the next batch.

        Raises:
            StoreWriteError: The ready write failed
        """
        await self._command("request")

    async def cancel(self) -> None:
        """Abandon the current round and go back to waiting."""
        await self._command("cancel")

    async def update_config(self, config: EmitterConfig) -> None:
        """Change the emission parameters requested for the next round."""
        await self._command("config", config)

    async def run_round(self) -> Optional[RoundOutcome]:
        """Request a round and wait for its outcome (None if cancelled)."""
        await self.request_round()
        return await self.wait_outcome()

    async def wait_outcome(self) -> Optional[RoundOutcome]:
        if self._outcome is None:
            return self.last_outcome
        return await asyncio.shield(self._outcome)

    async def leave(self) -> None:
        """Stop the worker, release audio and delete the request record."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        await self._cleanup()
        self._finish(None)
        if self.request_id is not None:
            request_id, self.request_id = self.request_id, None
            await self.store.delete(request_id)
        self.phase = Phase.IDLE

    # ---------------------------------------------------------------- worker

    def _post(self, kind: str, data: Any = None, reply: Optional[asyncio.Future] = None) -> None:
        self._queue.put_nowait((kind, data, reply))

    def _on_record(self, record: Optional[Dict[str, Any]]) -> None:
        self._post("record", record)

    async def _command(self, kind: str, data: Any = None) -> Any:
        if self._worker is None:
            raise ColocationError(f"{self.participant_id} has not joined a session")
        reply = asyncio.get_running_loop().create_future()
        self._post(kind, data, reply)
        return await reply

    async def _run_worker(self) -> None:
        while True:
            kind, data, reply = await self._queue.get()
            try:
                result = await self._dispatch(kind, data)
            except ColocationError as e:
                await self._on_error(e)
                if reply is not None and not reply.done():
                    reply.set_exception(e)
            else:
                if reply is not None and not reply.done():
                    reply.set_result(result)

    async def _dispatch(self, kind: str, data: Any) -> Any:
        if kind == "record":
            return await self._handle_record(data)
        if kind == "request":
            return await self._do_request()
        if kind == "cancel":
            return await self._do_cancel()
        if kind == "config":
            return await self._do_config(data)
        if kind == "ready_timeout":
            return await self._on_ready_timeout(data)
        if kind == "response_timeout":
            return await self._on_response_timeout(data)
        raise ValueError(f"Unknown event {kind!r}")

    async def _on_error(self, error: ColocationError) -> None:
        if isinstance(error, HardwareAcquisitionError):
            cause = f"hardware_error: {error}"
            self.sink.error("audio", f"Failed to start microphone: {error}")
        elif isinstance(error, StoreWriteError):
            cause = f"store_error: {error}"
            self.sink.error("queue", f"Write failed: {error}")
        else:
            cause = f"{type(error).__name__}: {error}"
            self.sink.error("participant", str(error))
        await self._cleanup()
        self.phase = Phase.ERROR
        self._finish(RoundOutcome(Outcome.SYSTEM_ERROR, attempts=self._attempts, cause=cause,
                                  request_id=self.request_id))

    # -------------------------------------------------------------- commands

    async def _do_request(self) -> None:
        if self.request_id is None:
            raise ColocationError("request was deleted; join again")
        if self._outcome is None or self._outcome.done():
            self._outcome = asyncio.get_running_loop().create_future()
        self._attempts = 1
        await self._mark_ready()

    async def _mark_ready(self) -> None:
        self._round += 1
        record = self.store.get(self.request_id)
        if record is not None and record["status"] != Status.WAITING.value:
            await self.store.transition(self.request_id, Status.WAITING, **round_reset_fields())
        await self.store.transition(self.request_id, Status.READY, **round_reset_fields())
        self.phase = Phase.READY
        self.sink.success("request", f"Status updated to READY (attempt {self._attempts})")

        loop = asyncio.get_running_loop()
        self._ready_timer = loop.call_later(READY_TIMEOUT_S, self._post, "ready_timeout", self._round)

    async def _do_cancel(self) -> None:
        self.sink.info("request", "Request cancelled by user")
        await self._cleanup()
        await self._reset_record()
        self.phase = Phase.WAITING
        self._finish(None)

    async def _do_config(self, config: EmitterConfig) -> None:
        self.config = config
        if self.request_id is not None:
            await self.store.update(self.request_id, {"config": config.to_record()})
        self.sink.debug("request", f"Config: {config.key()}")

    async def _reset_record(self) -> None:
        if self.request_id is None:
            return
        try:
            await self.store.transition(self.request_id, Status.WAITING, **round_reset_fields())
        except StoreWriteError as e:
            self.sink.debug("request", f"Failed to reset status: {e}")

    # ---------------------------------------------------------------- timers

    async def _on_ready_timeout(self, round_no: int) -> None:
        if round_no != self._round or self.phase != Phase.READY:
            return
        self.sink.error("timeout", f"Still waiting for coordinator after {READY_TIMEOUT_S:.0f}s")
        self.sink.info("hint", "Check if the coordinator session is active")
        self.phase = Phase.ERROR
        self._finish(RoundOutcome(Outcome.SYSTEM_ERROR, attempts=self._attempts,
                                  cause="ready_timeout", request_id=self.request_id))

    async def _on_response_timeout(self, round_no: int) -> None:
        if round_no != self._round or self.phase != Phase.SUBMITTING:
            return
        self.sink.error("timeout", "Coordinator response timeout - retrying...")
        await self._cleanup()
        await self._reset_record()

        if self._attempts >= MAX_ROUND_ATTEMPTS:
            self.phase = Phase.ERROR
            self._finish(RoundOutcome(Outcome.SYSTEM_ERROR, attempts=self._attempts,
                                      cause="response_timeout", request_id=self.request_id))
            return

        self._attempts += 1
        await self._mark_ready()

    def _clear_timers(self) -> None:
        for timer in (self._ready_timer, self._response_timer):
            if timer is not None:
                timer.cancel()
        self._ready_timer = None
        self._response_timer = None

    # --------------------------------------------------------- notifications

    async def _handle_record(self, record: Optional[Dict[str, Any]]) -> None:
        if record is None:
            if self.request_id is None:
                return
            self.sink.error("queue", "Request was deleted - session may have ended")
            await self._cleanup()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            self.request_id = None
            self.phase = Phase.IDLE
            self._finish(RoundOutcome(Outcome.SYSTEM_ERROR, attempts=self._attempts,
                                      cause="request_deleted"))
            return

        status = Status(record["status"])
        if status != Status.READY and self._ready_timer is not None:
            self._ready_timer.cancel()
            self._ready_timer = None
        self.sink.debug("status", f"{status.value} (has pattern: {bool(record.get('detectedPattern'))})")

        # No round in progress on this side; a new request_round resets the record
        if self.phase in (Phase.IDLE, Phase.WAITING, Phase.ERROR):
            return

        if status == Status.EMITTING:
            await self._on_emitting(record)
        elif status == Status.SUBMITTED:
            await self._on_submitted(record)
        elif status.is_terminal:
            await self._on_verdict(record)

    async def _on_emitting(self, record: Dict[str, Any]) -> None:
        batch_id = record.get("batchId")
        if self._listening_batch == batch_id and self.phase == Phase.LISTENING:
            return
        self.phase = Phase.LISTENING
        self._mic_ready = False

        if self.detector is not None and self.detector.is_recording:
            self.detector.clear_peaks()
        else:
            config = EmitterConfig.from_record(record.get("config") or {})
            self.detector = SpectralDetector(self.input_device, config.freq_low, config.freq_high,
                                             sink=self.sink)
            await self.detector.start_recording()
            self.sink.info("audio", "Microphone started for emission")
        self._mic_ready = True
        self._listening_batch = batch_id

        try:
            await self.store.transition(record["id"], Status.LISTENING)
        except InvalidTransitionError:
            # Coordinator already moved on (handshake timed out); keep recording
            self.sink.debug("handshake", "Batch moved on before LISTENING was signaled")
            return
        self.sink.debug("handshake", "Signaled LISTENING to coordinator")

    async def _on_submitted(self, record: Dict[str, Any]) -> None:
        if record.get("detectedPattern"):
            self.phase = Phase.SUBMITTING
            return
        if self._has_submitted:
            return
        self._has_submitted = True
        self.phase = Phase.SUBMITTING
        await self._submit(record["id"])

        loop = asyncio.get_running_loop()
        self._response_timer = loop.call_later(RESPONSE_TIMEOUT_S, self._post,
                                               "response_timeout", self._round)

    async def _submit(self, request_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + MIC_READY_WAIT_S
        while not self._mic_ready and loop.time() < deadline:
            await asyncio.sleep(MIC_READY_POLL_MS / 1000.0)

        if self.detector is None or not self._mic_ready:
            self.sink.error("submit", "Microphone not ready - cannot submit")
            return

        peaks = await self.detector.stop_and_analyze()
        pattern = detected_pattern(peaks)
        diagnostics = self.detector.diagnostics()
        self.sink.info("submit", f"Submitting pattern: {pattern_to_string(pattern)}")

        await self.store.transition(
            request_id, Status.SUBMITTED,
            detectedPattern=[s.value for s in pattern],
            diagnosticData=diagnostics,
        )
        self.submissions += 1

    async def _on_verdict(self, record: Dict[str, Any]) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None
        if self.phase in (Phase.VERIFIED, Phase.FAILED):
            return

        request = ParticipantRequest.from_record(record)
        match_count = request.match_count or 0
        if request.failure_cause:
            outcome = Outcome.SYSTEM_ERROR
        else:
            outcome = classify_outcome(VerificationResult(match_count, bool(request.passed)))

        self.phase = Phase.VERIFIED if request.status == Status.VERIFIED else Phase.FAILED
        if self.phase == Phase.VERIFIED:
            self.sink.success("verify", f"Verified! Score: {match_count}/{NUM_PULSES}")
        else:
            self.sink.error("verify", f"Failed. Score: {match_count}/{NUM_PULSES}")
        log_outcome(self.sink, self.participant_id, outcome.value, match_count, request.failure_cause)

        await self._cleanup()
        self._finish(RoundOutcome(outcome, match_count=match_count, attempts=self._attempts,
                                  cause=request.failure_cause, request_id=request.id,
                                  detected_pattern=request.detected_pattern))

    # --------------------------------------------------------------- helpers

    async def _cleanup(self) -> None:
        self._has_submitted = False
        self._mic_ready = False
        self._listening_batch = None
        self._clear_timers()
        if self.detector is not None:
            await self.detector.cleanup()
            self.detector = None

    def _finish(self, outcome: Optional[RoundOutcome]) -> None:
        if outcome is not None:
            self.last_outcome = outcome
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)

