"""
Coordinator Tests: batching, handshake, emission retries, verification

Participants here are either full ParticipantSession actors listening on
the simulated channel, or bare records driven straight through the store
(a participant that never answers).
"""

import sys
import asyncio
import pytest
import pytest_asyncio
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from coordinator import SessionCoordinator, group_by_config, new_batch_id
from hardware_sim import SimulatedSpeaker
from participant import ParticipantSession
from patterns import Outcome, pattern_from_string
from records import (
    EmitterConfig, HardwareAcquisitionError, ParticipantRequest, Status
)

SESSION = "test-session"
ROUND_TIMEOUT_S = 15.0


async def wait_for_status(store, record_id, *statuses, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        record = store.get(record_id)
        if record is not None and record["status"] in statuses:
            return record
        await asyncio.sleep(0.01)
    raise AssertionError(f"{record_id} never reached {statuses}: {store.get(record_id)}")


async def add_record(store, record_id, status, **fields):
    record = ParticipantRequest(id=record_id, session_id=SESSION, participant_id=record_id,
                                status=status).to_record()
    record.update(fields)
    await store.create(record)
    return record_id


@pytest_asyncio.fixture
async def coordinator(store, speaker, memory_sink):
    coordinator = SessionCoordinator(store, speaker, SESSION, sink=memory_sink)
    yield coordinator
    await coordinator.end_session()


@pytest_asyncio.fixture
async def make_participant(store, make_microphone, memory_sink):
    created = []

    async def _make(name, config=None, **mic_kwargs):
        participant = ParticipantSession(store, SESSION, name, make_microphone(**mic_kwargs),
                                         config=config, sink=memory_sink)
        await participant.join()
        created.append(participant)
        return participant

    yield _make
    for participant in created:
        await participant.leave()


class TestGrouping:

    def test_groups_by_exact_config(self):
        a = ParticipantRequest("a", SESSION, "a", config=EmitterConfig(volume=0.5))
        b = ParticipantRequest("b", SESSION, "b", config=EmitterConfig(volume=0.75))
        c = ParticipantRequest("c", SESSION, "c", config=EmitterConfig(volume=0.5))
        groups = group_by_config([a, b, c])
        assert list(groups.keys()) == [EmitterConfig(volume=0.5), EmitterConfig(volume=0.75)]
        assert [r.id for r in groups[EmitterConfig(volume=0.5)]] == ["a", "c"]

    def test_filter_flag_splits_groups(self):
        a = ParticipantRequest("a", SESSION, "a")
        b = ParticipantRequest("b", SESSION, "b", config=EmitterConfig(use_output_filter=False))
        assert len(group_by_config([a, b])) == 2

    def test_batch_ids_unique(self):
        assert new_batch_id() != new_batch_id()
        assert new_batch_id().startswith("batch_")


class TestBatchRounds:

    @pytest.mark.asyncio
    async def test_same_config_shares_one_emission(self, coordinator, make_participant, store):
        await coordinator.start()
        alice = await make_participant("alice")
        bob = await make_participant("bob")

        outcomes = await asyncio.wait_for(
            asyncio.gather(alice.run_round(), bob.run_round()), ROUND_TIMEOUT_S)

        assert [o.outcome for o in outcomes] == [Outcome.PASSED, Outcome.PASSED]
        assert coordinator.scheduler.batches_run == 1
        assert len(coordinator.scheduler.emission_windows) == 1

        records = [store.get(o.request_id) for o in outcomes]
        assert records[0]["batchId"] == records[1]["batchId"]
        assert records[0]["emittedPattern"] == records[1]["emittedPattern"]
        assert all(r["status"] == "verified" for r in records)
        assert set(coordinator.results) == {o.request_id for o in outcomes}

    @pytest.mark.asyncio
    async def test_different_configs_emit_sequentially(self, coordinator, make_participant,
                                                       fast_timers):
        await coordinator.start()
        loud = await make_participant("loud", EmitterConfig(volume=0.75))
        quiet = await make_participant("quiet", EmitterConfig(volume=0.5))

        outcomes = await asyncio.wait_for(
            asyncio.gather(loud.run_round(), quiet.run_round()), ROUND_TIMEOUT_S)

        assert all(o.passed for o in outcomes)
        windows = coordinator.scheduler.emission_windows
        assert len(windows) == 2
        assert windows[0][1] <= windows[1][0]

    @pytest.mark.asyncio
    async def test_silent_participant_times_out_handshake(self, coordinator, store, memory_sink,
                                                          fast_timers):
        """A member that never reports listening does not block the batch."""
        await coordinator.start()
        await add_record(store, "mute", Status.READY)

        record = await wait_for_status(store, "mute", "submitted")

        assert record["emittedPattern"]
        assert record["detectedPattern"] is None
        assert any("Timeout: 0/1" in m for m in memory_sink.messages(component="handshake"))
        assert len(coordinator.scheduler.emission_windows) == 1

        # Nothing to verify until a detection is submitted
        await asyncio.sleep(0.1)
        assert store.get("mute")["status"] == "submitted"

    @pytest.mark.asyncio
    async def test_ready_arriving_mid_batch_gets_next_round(self, coordinator, make_participant,
                                                            fast_timers):
        await coordinator.start()
        first = await make_participant("first")
        second = await make_participant("second")

        first_round = asyncio.ensure_future(first.run_round())
        await asyncio.sleep(0.3)
        assert coordinator.scheduler.is_processing
        second_outcome = await asyncio.wait_for(second.run_round(), ROUND_TIMEOUT_S)
        first_outcome = await asyncio.wait_for(first_round, ROUND_TIMEOUT_S)

        assert first_outcome.passed and second_outcome.passed
        assert coordinator.scheduler.batches_run == 2


class TestEmissionFailures:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, coordinator, make_participant, speaker,
                                                  fast_timers):
        await coordinator.start()
        speaker.fail_emissions = 2
        alice = await make_participant("alice")

        outcome = await asyncio.wait_for(alice.run_round(), ROUND_TIMEOUT_S)

        assert outcome.passed
        assert speaker.fail_emissions == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_members(self, coordinator, make_participant, speaker,
                                                  store, fast_timers):
        await coordinator.start()
        speaker.fail_emissions = 3
        alice = await make_participant("alice")

        outcome = await asyncio.wait_for(alice.run_round(), ROUND_TIMEOUT_S)

        assert outcome.outcome == Outcome.SYSTEM_ERROR
        assert outcome.cause.startswith("emission_error")
        record = store.get(alice.request_id)
        assert record["status"] == "failed"
        assert coordinator.scheduler.emission_windows == []
        assert coordinator.fatal_error is None

    @pytest.mark.asyncio
    async def test_hardware_loss_stops_the_session(self, coordinator, store, monkeypatch,
                                                   fast_timers):
        await coordinator.start()

        async def lost_device(pattern, config):
            raise HardwareAcquisitionError("device lost")

        monkeypatch.setattr(coordinator.emitter, "emit", lost_device)
        await add_record(store, "r1", Status.READY)

        record = await wait_for_status(store, "r1", "failed")
        assert record["failureCause"] == "hardware_error: device lost"

        for _ in range(50):
            if coordinator.fatal_error is not None:
                break
            await asyncio.sleep(0.01)
        assert isinstance(coordinator.fatal_error, HardwareAcquisitionError)

        # No further batches once the speaker is gone
        await add_record(store, "r2", Status.READY)
        await asyncio.sleep(0.2)
        assert store.get("r2")["status"] == "ready"

    @pytest.mark.asyncio
    async def test_unavailable_speaker_fails_start(self, store, channel):
        coordinator = SessionCoordinator(store, SimulatedSpeaker(channel, available=False), SESSION)
        with pytest.raises(HardwareAcquisitionError):
            await coordinator.start()


class TestVerification:

    @pytest.mark.asyncio
    async def test_submission_verified(self, coordinator, store):
        await coordinator.start()
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=list("LHLHHLLH"))

        record = await wait_for_status(store, "r1", "verified")

        assert record["matchCount"] == 6
        assert record["passed"] is True
        assert record["verifiedAt"] is not None
        assert coordinator.results["r1"].match_count == 6

    @pytest.mark.asyncio
    async def test_low_score_fails(self, coordinator, store):
        await coordinator.start()
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=list("HLHL"))

        record = await wait_for_status(store, "r1", "failed")

        assert record["matchCount"] == 3
        assert record["passed"] is False
        assert record["failureCause"] is None

    @pytest.mark.asyncio
    async def test_unknown_detection_scores_zero(self, coordinator, store):
        await coordinator.start()
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=["?"])
        record = await wait_for_status(store, "r1", "failed")
        assert record["matchCount"] == 0

    @pytest.mark.asyncio
    async def test_missing_emitted_pattern(self, coordinator, store):
        await coordinator.start()
        await add_record(store, "r1", Status.SUBMITTED, detectedPattern=list("HLHHLL"))

        record = await wait_for_status(store, "r1", "failed")

        assert record["failureCause"] == "missing_pattern"
        assert "r1" not in coordinator.results

    @pytest.mark.asyncio
    async def test_verdict_written_once(self, coordinator, store):
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=list("HLHHLL"))

        first = await coordinator.verify_request("r1")
        second = await coordinator.verify_request("r1")

        assert first.passed
        assert second is None

    @pytest.mark.asyncio
    async def test_failed_verdict_write_is_retried(self, coordinator, store, memory_sink):
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=list("HLHHLL"))
        store.fail_next_writes(1)

        assert await coordinator.verify_request("r1") is None
        assert store.get("r1")["status"] == "submitted"
        assert memory_sink.messages(level="error", component="verify")

        assert (await coordinator.verify_request("r1")).passed
        assert store.get("r1")["status"] == "verified"

    @pytest.mark.asyncio
    async def test_failed_verdict_write_is_dispatched_again(self, coordinator, store, memory_sink):
        """Nothing else writes the record, so the coordinator must come back to it."""
        await coordinator.start()
        await add_record(store, "r1", Status.SUBMITTED,
                         emittedPattern=list("HLHHLL"), detectedPattern=list("HLHHLL"))
        store.fail_next_writes(1)

        record = await wait_for_status(store, "r1", "verified")

        assert record["matchCount"] == 6
        assert memory_sink.messages(level="error", component="verify")

    @pytest.mark.asyncio
    async def test_submitted_without_detection_is_not_verified(self, coordinator):
        await coordinator.store.create(ParticipantRequest(
            "r1", SESSION, "p1", status=Status.SUBMITTED,
            emitted_pattern=pattern_from_string("HLHHLL")).to_record())
        assert await coordinator.verify_request("r1") is None


class TestSessionLifecycle:

    @pytest.mark.asyncio
    async def test_status_counts(self, coordinator, store):
        await coordinator.start()
        await add_record(store, "a", Status.WAITING)
        await add_record(store, "b", Status.WAITING)
        await asyncio.sleep(0.05)
        assert coordinator.status_counts() == {"waiting": 2}

    @pytest.mark.asyncio
    async def test_end_session_deletes_requests(self, store, speaker, make_participant):
        coordinator = SessionCoordinator(store, speaker, SESSION)
        await coordinator.start()
        alice = await make_participant("alice")
        await add_record(store, "other", Status.WAITING)

        await coordinator.end_session()

        assert store.list(SESSION) == []
        assert not speaker.is_open
        for _ in range(50):
            if alice.request_id is None:
                break
            await asyncio.sleep(0.01)
        assert alice.request_id is None
        assert alice.last_outcome.cause == "request_deleted"
