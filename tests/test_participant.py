"""
Participant Tests: round lifecycle, submission, timeouts, deletion

A scripted coordinator drives the store directly so each step of the
participant's reaction can be observed in isolation.
"""

import sys
import asyncio
import pytest
import pytest_asyncio
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from emitter import PulseEmitter
from participant import ParticipantSession, Phase
from patterns import Outcome, generate_pattern, pattern_to_string
from records import (
    ColocationError, EmitterConfig, Status, StoreWriteError
)

SESSION = "test-session"


async def wait_for(predicate, timeout=5.0, message="condition"):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"timed out waiting for {message}")


def status_of(store, record_id):
    record = store.get(record_id)
    return record["status"] if record else None


class ScriptedCoordinator:
    """Walks one request through a round by writing the store by hand."""

    def __init__(self, store, speaker=None):
        self.store = store
        self.emitter = PulseEmitter(speaker) if speaker is not None else None
        self.pattern = generate_pattern()

    async def start_round(self, record_id):
        await wait_for(lambda: status_of(self.store, record_id) == "ready", message="ready")
        await self.store.transition(record_id, Status.EMITTING, batchId="batch_test",
                                    emittedPattern=list(pattern_to_string(self.pattern)))
        await wait_for(lambda: status_of(self.store, record_id) == "listening", message="listening")

    async def emit(self):
        if self.emitter is not None:
            await self.emitter.emit(self.pattern, EmitterConfig())
        # Transmission latency before asking for submissions
        await asyncio.sleep(0.15)

    async def collect(self, record_id):
        await self.store.transition(record_id, Status.SUBMITTED)
        await wait_for(lambda: (self.store.get(record_id) or {}).get("detectedPattern"),
                       message="detection")
        return self.store.get(record_id)


async def drive_to(participant, store, phase, monkeypatch):
    """Bring a joined participant to `phase` through real store writes."""
    if phase == Phase.WAITING:
        return
    if phase == Phase.ERROR:
        monkeypatch.setattr("participant.READY_TIMEOUT_S", 0.05)
        await asyncio.wait_for(participant.run_round(), 2.0)
        return

    coordinator = ScriptedCoordinator(store)
    round_task = asyncio.ensure_future(participant.run_round())
    await wait_for(lambda: participant.phase == Phase.READY, message="ready")
    if phase == Phase.READY:
        return
    await coordinator.start_round(participant.request_id)
    if phase == Phase.LISTENING:
        return
    await coordinator.collect(participant.request_id)
    if phase == Phase.SUBMITTING:
        return
    await store.transition(participant.request_id, Status.VERIFIED, matchCount=6, passed=True)
    await asyncio.wait_for(round_task, 2.0)


@pytest_asyncio.fixture
async def participant(store, make_microphone, memory_sink):
    participant = ParticipantSession(store, SESSION, "alice", make_microphone(), sink=memory_sink)
    await participant.join()
    yield participant
    await participant.leave()


class TestJoin:

    @pytest.mark.asyncio
    async def test_join_creates_waiting_record(self, participant, store):
        record = store.get(participant.request_id)
        assert record["status"] == "waiting"
        assert record["sessionId"] == SESSION
        assert record["participantId"] == "alice"
        assert record["config"]["volume"] == EmitterConfig().volume
        assert participant.phase == Phase.WAITING

    @pytest.mark.asyncio
    async def test_commands_need_a_session(self, store, make_microphone):
        participant = ParticipantSession(store, SESSION, "bob", make_microphone())
        with pytest.raises(ColocationError):
            await participant.request_round()

    @pytest.mark.asyncio
    async def test_leave_deletes_record(self, store, make_microphone):
        participant = ParticipantSession(store, SESSION, "bob", make_microphone())
        request_id = await participant.join()
        await participant.leave()
        assert store.get(request_id) is None
        assert participant.phase == Phase.IDLE


class TestRound:

    @pytest.mark.asyncio
    async def test_request_marks_ready(self, participant, store):
        await participant.request_round()
        assert status_of(store, participant.request_id) == "ready"
        assert participant.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_emitting_starts_microphone_and_signals_listening(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        await participant.request_round()
        await coordinator.start_round(participant.request_id)

        assert participant.phase == Phase.LISTENING
        assert participant.detector.is_recording
        assert participant.input_device.active_streams == 1

    @pytest.mark.asyncio
    async def test_full_round_with_emission(self, participant, store, speaker):
        coordinator = ScriptedCoordinator(store, speaker)
        round_task = asyncio.ensure_future(participant.run_round())

        await coordinator.start_round(participant.request_id)
        await coordinator.emit()
        record = await coordinator.collect(participant.request_id)

        assert record["detectedPattern"] == list(pattern_to_string(coordinator.pattern))
        assert record["diagnosticData"]["noise_floor_db"] <= 0
        assert participant.submissions == 1
        assert participant.input_device.active_streams == 0

        await store.transition(participant.request_id, Status.VERIFIED, matchCount=6, passed=True)
        outcome = await asyncio.wait_for(round_task, 2.0)

        assert outcome.outcome == Outcome.PASSED
        assert outcome.match_count == 6
        assert participant.phase == Phase.VERIFIED

    @pytest.mark.asyncio
    async def test_submits_once_per_round(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        await participant.request_round()
        await coordinator.start_round(participant.request_id)
        await coordinator.collect(participant.request_id)

        # Coordinator re-announces submitted; the participant must not analyse again
        await store.update(participant.request_id, {"status": "submitted"})
        await asyncio.sleep(0.1)
        assert participant.submissions == 1

    @pytest.mark.asyncio
    async def test_silent_channel_submits_unknown(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        await participant.request_round()
        await coordinator.start_round(participant.request_id)
        await coordinator.emit()
        record = await coordinator.collect(participant.request_id)
        assert record["detectedPattern"] == ["?"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("match_count,expected", [
        (4, Outcome.PARTIAL_MATCH),
        (0, Outcome.NO_SIGNAL),
    ])
    async def test_failed_verdict_outcomes(self, participant, store, match_count, expected):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())
        await coordinator.start_round(participant.request_id)
        await coordinator.collect(participant.request_id)

        await store.transition(participant.request_id, Status.FAILED,
                               matchCount=match_count, passed=False)
        outcome = await asyncio.wait_for(round_task, 2.0)

        assert outcome.outcome == expected
        assert participant.phase == Phase.FAILED

    @pytest.mark.asyncio
    async def test_failure_cause_is_system_error(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())
        await coordinator.start_round(participant.request_id)

        await store.transition(participant.request_id, Status.FAILED,
                               failureCause="emission_error: output underrun")
        outcome = await asyncio.wait_for(round_task, 2.0)

        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause == "emission_error: output underrun"
        assert participant.detector is None

    @pytest.mark.asyncio
    async def test_next_round_clears_previous_results(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())
        await coordinator.start_round(participant.request_id)
        await coordinator.collect(participant.request_id)
        await store.transition(participant.request_id, Status.VERIFIED, matchCount=6, passed=True)
        await asyncio.wait_for(round_task, 2.0)

        await participant.request_round()
        record = store.get(participant.request_id)
        assert record["status"] == "ready"
        assert record["detectedPattern"] is None
        assert record["emittedPattern"] is None
        assert record["matchCount"] is None

    @pytest.mark.asyncio
    async def test_cancel_resets_to_waiting(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())
        await coordinator.start_round(participant.request_id)

        await participant.cancel()

        assert await asyncio.wait_for(round_task, 1.0) is None
        assert status_of(store, participant.request_id) == "waiting"
        assert participant.phase == Phase.WAITING
        assert participant.detector is None

    @pytest.mark.asyncio
    async def test_config_update_is_persisted(self, participant, store):
        await participant.update_config(EmitterConfig(volume=0.25, use_output_filter=False))
        record = store.get(participant.request_id)
        assert record["config"]["volume"] == 0.25
        assert record["config"]["useOutputFilter"] is False


class TestFailures:

    @pytest.mark.asyncio
    async def test_response_timeout_retries_then_gives_up(self, participant, store, fast_timers):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())

        for _ in range(3):
            await coordinator.start_round(participant.request_id)
            await coordinator.collect(participant.request_id)
            # Never verify

        outcome = await asyncio.wait_for(round_task, 5.0)

        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause == "response_timeout"
        assert outcome.attempts == 3
        assert participant.submissions == 3
        assert participant.phase == Phase.ERROR
        assert status_of(store, participant.request_id) == "waiting"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase", [
        Phase.WAITING, Phase.READY, Phase.LISTENING, Phase.SUBMITTING, Phase.VERIFIED, Phase.ERROR,
    ])
    async def test_deletion_returns_to_idle_from_any_phase(self, participant, store, monkeypatch,
                                                           phase):
        await drive_to(participant, store, phase, monkeypatch)
        assert participant.phase == phase
        microphone = participant.input_device

        await store.delete(participant.request_id)
        await wait_for(lambda: participant.phase == Phase.IDLE, message="idle")

        assert participant.request_id is None
        assert participant.detector is None
        assert microphone.active_streams == 0

    @pytest.mark.asyncio
    async def test_deletion_resolves_pending_round(self, participant, store):
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())
        await coordinator.start_round(participant.request_id)
        microphone = participant.input_device

        await store.delete(participant.request_id)
        outcome = await asyncio.wait_for(round_task, 2.0)

        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause == "request_deleted"
        assert participant.phase == Phase.IDLE
        assert participant.request_id is None
        assert microphone.active_streams == 0

        with pytest.raises(ColocationError):
            await participant.request_round()

    @pytest.mark.asyncio
    async def test_denied_microphone_is_system_error(self, store, make_microphone):
        participant = ParticipantSession(store, SESSION, "bob",
                                         make_microphone(permission_denied=True))
        await participant.join()
        coordinator = ScriptedCoordinator(store)
        round_task = asyncio.ensure_future(participant.run_round())

        await wait_for(lambda: status_of(store, participant.request_id) == "ready")
        await store.transition(participant.request_id, Status.EMITTING, batchId="b",
                               emittedPattern=list(pattern_to_string(coordinator.pattern)))
        outcome = await asyncio.wait_for(round_task, 2.0)

        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause.startswith("hardware_error")
        assert participant.phase == Phase.ERROR
        await participant.leave()

    @pytest.mark.asyncio
    async def test_ready_write_failure_raises(self, participant, store):
        store.fail_next_writes(1)
        with pytest.raises(StoreWriteError):
            await participant.request_round()
        assert participant.phase == Phase.ERROR
        assert participant.last_outcome.cause.startswith("store_error")

    @pytest.mark.asyncio
    async def test_ready_timeout(self, participant, monkeypatch):
        monkeypatch.setattr("participant.READY_TIMEOUT_S", 0.05)
        outcome = await asyncio.wait_for(participant.run_round(), 2.0)
        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause == "ready_timeout"
        assert participant.phase == Phase.ERROR
