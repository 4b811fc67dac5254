"""
Coordinator side of the handshake.

The coordinator owns the speaker. It watches every request of its session
through a live table fed by store callbacks, batches ready participants
that share an EmitterConfig, emits one pattern per batch and verifies what
each participant reports back.

Round for one batch:
    ready -> emitting (pattern + batchId written for all members at once)
    wait for every member to report listening (HANDSHAKE_TIMEOUT_S)
    emit, retrying transient channel errors (MAX_EMIT_ATTEMPTS)
    wait TRANSMISSION_LATENCY_MS, then all active members -> submitted
    each submission with a detected pattern -> verified | failed
"""

import asyncio
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional, Set, Tuple

from comms import EventSink, NullEventSink, log_batch, log_verification
from config import (
    BATCH_DEBOUNCE_MS, RECHECK_DELAY_MS, HANDSHAKE_TIMEOUT_S, HANDSHAKE_POLL_MS,
    PRE_EMIT_BUFFER_MS, TRANSMISSION_LATENCY_MS, MAX_EMIT_ATTEMPTS, NUM_PULSES,
    VERIFY_RETRY_MS, WARMUP_PULSE_MS
)
from emitter import PulseEmitter
from patterns import VerificationResult, compare_patterns, generate_pattern, pattern_to_string
from records import (
    EmitterConfig, EmissionError, HardwareAcquisitionError, InvalidTransitionError,
    ParticipantRequest, Status, StoreWriteError
)
from store import SharedStateStore

ACTIVE_STATUSES = (Status.EMITTING, Status.LISTENING)


def group_by_config(requests: List[ParticipantRequest]) -> "OrderedDict[EmitterConfig, List[ParticipantRequest]]":
    """
    Partition requests by exact EmitterConfig equality.

    Groups keep first-seen order, members keep input order.
    """
    groups: "OrderedDict[EmitterConfig, List[ParticipantRequest]]" = OrderedDict()
    for request in requests:
        groups.setdefault(request.config, []).append(request)
    return groups


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex}"


class BatchScheduler:
    """
    Runs batches strictly one after another.

    `table` is the coordinator's live view of the session (request id ->
    ParticipantRequest). It is replaced in place on every store notification,
    so any read here after a suspension point sees current state.
    """

    def __init__(self, store: SharedStateStore, emitter: PulseEmitter,
                 table: Dict[str, ParticipantRequest], sink: Optional[EventSink] = None):
        self.store = store
        self.emitter = emitter
        self.table = table
        self.sink = sink or NullEventSink()

        self.is_processing = False
        self.batches_run = 0
        self.fatal_error: Optional[BaseException] = None
        # (start, end) on the event loop clock, one per successful emission
        self.emission_windows: List[Tuple[float, float]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    def ready_requests(self) -> List[ParticipantRequest]:
        return [r for r in self.table.values() if r.status == Status.READY]

    def notify(self) -> None:
        """
        Table changed. (Re)arm the debounce if there is work and no round
        is running.
        """
        if self.is_processing or self.fatal_error is not None:
            return
        if not self.ready_requests():
            return
        self._arm(BATCH_DEBOUNCE_MS / 1000.0)

    def _arm(self, delay_s: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(delay_s, self._start_round)

    def _start_round(self) -> None:
        self._timer = None
        if self.is_processing:
            return
        ready = self.ready_requests()
        if not ready:
            return
        self.sink.info("queue", f"Collected {len(ready)} participant(s), starting batch")
        self._task = asyncio.create_task(self.process_queue(ready))
        self._task.add_done_callback(self._round_done)

    def _round_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.fatal_error = error
            self.sink.error("batch", f"Batch processing stopped: {error}")

    async def process_queue(self, requests: List[ParticipantRequest]) -> None:
        """Group requests by config and run each group as one batch."""
        if self.is_processing or not requests:
            return
        self.is_processing = True
        try:
            groups = group_by_config(requests)
            if len(groups) == 1:
                self.sink.info("process", f"Batching {len(requests)} participant(s) (same config)")
            else:
                self.sink.info("process", f"Processing {len(groups)} config groups sequentially")

            for config, group in groups.items():
                await self.process_batch(group, config)
        finally:
            self.is_processing = False
            # Requests that became ready while we were busy
            if self.fatal_error is None and self.ready_requests():
                self.sink.debug("process", f"Found {len(self.ready_requests())} new ready "
                                           "participant(s) after processing")
                self._arm(RECHECK_DELAY_MS / 1000.0)

    async def process_batch(self, group: List[ParticipantRequest], config: EmitterConfig) -> Optional[str]:
        """
        Run one round for a group sharing `config`.

        Returns:
            The batch id, or None if no member was still ready
        """
        members = [r.id for r in group
                   if r.id in self.table and self.table[r.id].status == Status.READY]
        if not members:
            self.sink.debug("batch", "Skipping group: no member still ready")
            return None

        batch_id = new_batch_id()
        pattern = generate_pattern(NUM_PULSES)
        log_batch(self.sink, batch_id, config.key(), members, pattern_to_string(pattern))

        members = await self._write_all(
            members, Status.EMITTING,
            batchId=batch_id, emittedPattern=[s.value for s in pattern]
        )
        if not members:
            self.sink.error("batch", f"{batch_id}: no member could be moved to emitting")
            return batch_id

        await self._await_handshake(members)
        await asyncio.sleep(PRE_EMIT_BUFFER_MS / 1000.0)

        if not self._active(members):
            self.sink.info("batch", f"{batch_id}: all members left before emission")
            return batch_id

        try:
            emitted = await self._emit_with_retry(pattern, config, members)
        except HardwareAcquisitionError as e:
            await self._fail_active(members, f"hardware_error: {e}")
            raise

        if emitted is not None:
            await asyncio.sleep(TRANSMISSION_LATENCY_MS / 1000.0)
            active = self._active(members)
            await self._write_all(active, Status.SUBMITTED)
            self.sink.info("batch", "Waiting for participant submissions...")

        self.batches_run += 1
        return batch_id

    async def _await_handshake(self, members: List[str]) -> bool:
        """Poll the live table until every member listens or the timeout hits."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + HANDSHAKE_TIMEOUT_S
        self.sink.debug("handshake", f"Waiting for {len(members)} participant(s) to be ready...")

        while loop.time() < deadline:
            if self._count(members, Status.LISTENING) == len(members):
                self.sink.success("handshake", f"All {len(members)} participant(s) ready")
                return True
            await asyncio.sleep(HANDSHAKE_POLL_MS / 1000.0)

        listening = self._count(members, Status.LISTENING)
        self.sink.info("handshake", f"Timeout: {listening}/{len(members)} participant(s) ready, "
                                    "proceeding anyway")
        return False

    async def _emit_with_retry(self, pattern, config: EmitterConfig,
                               members: List[str]) -> Optional[List[float]]:
        """
        Emit, retrying transient channel errors.

        Returns:
            Emitted frequencies, or None once every attempt failed (members
            are then marked failed with the cause)
        """
        loop = asyncio.get_running_loop()
        last_error: Optional[EmissionError] = None
        for attempt in range(1, MAX_EMIT_ATTEMPTS + 1):
            try:
                start = loop.time()
                emitted = await self.emitter.emit(pattern, config)
                self.emission_windows.append((start, loop.time()))
                return emitted
            except EmissionError as e:
                last_error = e
                self.sink.error("batch", f"Emission attempt {attempt}/{MAX_EMIT_ATTEMPTS} failed: {e}")
        await self._fail_active(members, f"emission_error: {last_error}")
        return None

    async def _fail_active(self, members: List[str], cause: str) -> None:
        await self._write_all(self._active(members), Status.FAILED, failureCause=cause)

    async def _write_all(self, request_ids: List[str], status: Status, **fields) -> List[str]:
        """
        Write one status to several requests concurrently.

        Returns:
            Ids whose write succeeded
        """
        results = await asyncio.gather(
            *(self.store.transition(rid, status, **fields) for rid in request_ids),
            return_exceptions=True
        )
        written = []
        for rid, result in zip(request_ids, results):
            if isinstance(result, (StoreWriteError, InvalidTransitionError)):
                self.sink.error("batch", f"Could not set {rid[:8]} to {status.value}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                written.append(rid)
        return written

    def _count(self, request_ids: List[str], status: Status) -> int:
        return sum(1 for rid in request_ids
                   if rid in self.table and self.table[rid].status == status)

    def _active(self, request_ids: List[str]) -> List[str]:
        return [rid for rid in request_ids
                if rid in self.table and self.table[rid].status in ACTIVE_STATUSES]

    async def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.is_processing = False


class SessionCoordinator:
    """
    One coordinating device for one session.

    Usage:
        coordinator = SessionCoordinator(store, speaker, session_id)
        await coordinator.start()
        ...
        await coordinator.end_session()
    """

    def __init__(self, store: SharedStateStore, output_device, session_id: Optional[str] = None,
                 sink: Optional[EventSink] = None, warmup_ms: float = WARMUP_PULSE_MS):
        self.store = store
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.sink = sink or NullEventSink()
        self.emitter = PulseEmitter(output_device, self.sink, warmup_ms)

        self.table: Dict[str, ParticipantRequest] = {}
        self.scheduler = BatchScheduler(store, self.emitter, self.table, self.sink)
        self.results: Dict[str, VerificationResult] = {}
        self._verifying: Set[str] = set()
        self._verify_tasks: Set[asyncio.Task] = set()
        self._verify_retry: Optional[asyncio.TimerHandle] = None
        self._unsubscribe = None

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self.scheduler.fatal_error

    async def start(self) -> None:
        """
        Acquire the speaker and start watching the session.

        Raises:
            HardwareAcquisitionError: Speaker unavailable
        """
        await self.emitter.init()
        self._unsubscribe = self.store.subscribe_session(self.session_id, self._on_session_change)
        self.sink.info("session", f"Session {self.session_id} started")

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for request in self.table.values():
            counts[request.status.value] = counts.get(request.status.value, 0) + 1
        return counts

    def _on_session_change(self, records: List[dict]) -> None:
        self.table.clear()
        for record in records:
            request = ParticipantRequest.from_record(record)
            self.table[request.id] = request

        counts = self.status_counts()
        self.sink.debug("queue", f"Updated: {len(self.table)} entries | " +
                        ", ".join(f"{s}:{c}" for s, c in counts.items()))
        pending = [r for r in self.table.values()
                   if r.status == Status.SUBMITTED and not r.has_detection]
        if pending:
            self.sink.debug("queue", f"Waiting for {len(pending)} participant(s) to submit patterns...")

        self.scheduler.notify()
        self._dispatch_verifications()

    def _dispatch_verifications(self) -> None:
        for request in self.table.values():
            if request.status != Status.SUBMITTED or not request.has_detection:
                continue
            if request.id in self._verifying:
                continue
            self._verifying.add(request.id)
            task = asyncio.create_task(self.verify_request(request.id))
            self._verify_tasks.add(task)
            task.add_done_callback(lambda t, rid=request.id: self._verify_done(t, rid))

    def _verify_done(self, task: asyncio.Task, request_id: str) -> None:
        self._verifying.discard(request_id)
        self._verify_tasks.discard(task)

    def _schedule_verify_retry(self) -> None:
        if self._verify_retry is not None or self._unsubscribe is None:
            return
        self._verify_retry = asyncio.get_running_loop().call_later(
            VERIFY_RETRY_MS / 1000.0, self._retry_verifications)

    def _retry_verifications(self) -> None:
        self._verify_retry = None
        self._dispatch_verifications()

    async def verify_request(self, request_id: str) -> Optional[VerificationResult]:
        """
        Score one submission and write the verdict.

        Returns:
            The result, or None if the request is no longer awaiting one
        """
        record = self.store.get(request_id)
        if record is None:
            return None
        request = ParticipantRequest.from_record(record)
        if request.status != Status.SUBMITTED or not request.has_detection:
            return None

        try:
            if not request.emitted_pattern:
                self.sink.error("verify", f"Missing emitted pattern for {request.display_name or request_id[:8]}")
                await self.store.transition(request_id, Status.FAILED, failureCause="missing_pattern")
                return None

            result = compare_patterns(request.emitted_pattern, request.detected_pattern)
            self.sink.info("verify", f"{request.display_name or request.participant_id}:")
            log_verification(self.sink, request_id, result.match_count, len(request.emitted_pattern),
                             result.passed, result.details)

            await self.store.transition(
                request_id, Status.VERIFIED if result.passed else Status.FAILED,
                matchCount=result.match_count, passed=result.passed
            )
        except StoreWriteError as e:
            # Left submitted; no notification follows a failed write
            self.sink.error("verify", f"Could not record verdict for {request_id[:8]}: {e}")
            self._schedule_verify_retry()
            return None

        self.results[request_id] = result
        return result

    async def end_session(self) -> None:
        """Stop processing and delete every request of the session."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._verify_retry is not None:
            self._verify_retry.cancel()
            self._verify_retry = None
        await self.scheduler.cancel()
        for task in list(self._verify_tasks):
            task.cancel()
        if self._verify_tasks:
            await asyncio.gather(*self._verify_tasks, return_exceptions=True)

        records = self.store.list(self.session_id)
        for record in records:
            await self.store.delete(record["id"])
        self.table.clear()
        await self.emitter.cleanup()
        self.sink.info("session", f"Session {self.session_id} ended, {len(records)} request(s) removed")
