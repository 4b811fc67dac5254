#!/usr/bin/env python3
"""
Entry point for the ultrasonic co-location handshake.

Commands:
    simulate  - coordinator + participants on a simulated acoustic channel
    autotest  - volume A/B test in loopback (simulated or real hardware)
    analyze   - decode recordings from a directory
    export    - write a random emission to a WAV file
    stats     - pass-threshold security figures
"""

import argparse
import asyncio
import os
import sys
import time
from typing import Dict, List, Optional

# Add src directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import (
    NUM_PULSES, PASS_THRESHOLD, FREQ_LOW, FREQ_HIGH, BAND_LOW_HZ, BAND_HIGH_HZ,
    FFT_SIZE, INPUT_SAMPLE_RATE, OUTPUT_SAMPLE_RATE, FREQ_TOLERANCE_HZ,
    HANDSHAKE_TIMEOUT_S, RESPONSE_TIMEOUT_S, MAX_EMIT_ATTEMPTS, MAX_ROUND_ATTEMPTS,
    LOG_FILE, CAPTURE_DIR, VOLUME_PRESETS, TESTS_PER_CONFIG
)
from autotest import AutoTestRunner
from comms import EventSink, TelemetryLogger, archive_session_logs
from coordinator import SessionCoordinator
from dsp_pipeline import SpectralDetector, detected_pattern
from emitter import PulseEmitter
from hardware_sim import (
    AcousticChannel, AudioEnvironment, SimulatedMicrophone, SimulatedSpeaker, write_pattern_wav
)
from participant import ParticipantSession, RoundOutcome
from patterns import Outcome, generate_pattern, pattern_to_string, security_stats
from records import EmitterConfig, HardwareAcquisitionError
from store import SharedStateStore


class SessionStats:
    """Track round outcomes for the session summary."""

    def __init__(self):
        self.rounds = 0
        self.outcomes: Dict[str, int] = {o.value: 0 for o in Outcome}
        self.per_participant: Dict[str, List[RoundOutcome]] = {}
        self.batches = 0
        self.emissions = 0

    def record(self, participant_id: str, outcome: Optional[RoundOutcome]) -> None:
        self.rounds += 1
        if outcome is None:
            return
        self.outcomes[outcome.outcome.value] += 1
        self.per_participant.setdefault(participant_id, []).append(outcome)


def validate_runtime_config() -> None:
    """
    Validate config values at startup.

    Called from main.py at runtime, NOT at import time, so that tests and
    tools can import config freely.
    """
    assert NUM_PULSES > 0, "NUM_PULSES must be positive"
    assert 0 < PASS_THRESHOLD <= NUM_PULSES, "PASS_THRESHOLD must be in (0, NUM_PULSES]"
    assert BAND_LOW_HZ < FREQ_LOW < FREQ_HIGH < BAND_HIGH_HZ, "Carriers must sit inside the band"
    assert FREQ_HIGH - FREQ_LOW > 2 * FREQ_TOLERANCE_HZ, "Carrier tolerances must not overlap"
    assert BAND_HIGH_HZ < INPUT_SAMPLE_RATE / 2, "Band must be below the input Nyquist frequency"
    assert FREQ_HIGH < OUTPUT_SAMPLE_RATE / 2, "Carriers must be below the output Nyquist frequency"
    assert FFT_SIZE > 0 and (FFT_SIZE & (FFT_SIZE - 1)) == 0, "FFT_SIZE must be a power of two"
    assert HANDSHAKE_TIMEOUT_S > 0 and RESPONSE_TIMEOUT_S > 0, "Timeouts must be positive"
    assert MAX_EMIT_ATTEMPTS >= 1 and MAX_ROUND_ATTEMPTS >= 1, "Attempt limits must be >= 1"

    log_dir = os.path.dirname(LOG_FILE) or '.'
    os.makedirs(log_dir, exist_ok=True)
    if not os.access(log_dir, os.W_OK):
        print(f"ERROR: Log directory not writable: {log_dir}", file=sys.stderr)
        sys.exit(1)


def print_session_summary(reason: str, stats: SessionStats, elapsed_s: float) -> None:
    """
    Print session summary.

    Args:
        reason: "COMPLETE" or "INTERRUPTED"
        stats: SessionStats with round outcomes
        elapsed_s: Wall time of the session
    """
    total = max(1, sum(stats.outcomes.values()))
    passed = stats.outcomes[Outcome.PASSED.value]

    print("=" * 80)
    print("                            SESSION SUMMARY")
    print("=" * 80)
    print(f"Termination Reason : {reason}")
    print(f"Total Runtime      : {elapsed_s:.1f}s")
    print(f"Rounds             : {stats.rounds}")
    print(f"Batches Emitted    : {stats.batches} ({stats.emissions} emissions)")
    print()
    print("OUTCOMES:")
    for name, count in stats.outcomes.items():
        print(f"  {name:<16} : {count} ({100.0 * count / total:.1f}%)")
    print(f"  Pass Rate        : {100.0 * passed / total:.1f}%")
    print()
    print("PARTICIPANTS:")
    for participant_id, outcomes in stats.per_participant.items():
        scores = " ".join(f"{o.match_count}/{NUM_PULSES}" for o in outcomes)
        print(f"  {participant_id:<16} : {scores}")
    print("=" * 80)


def build_microphones(channel: AcousticChannel, gains: List[float], echo: bool,
                      interference: bool, seed: Optional[int]) -> List[SimulatedMicrophone]:
    mics = []
    for i, gain in enumerate(gains):
        mics.append(SimulatedMicrophone(
            channel,
            gain=gain,
            reflections=[(0.012, 0.3)] if echo else [],
            interference=[(20400.0, 0.002)] if interference else [],
            seed=None if seed is None else seed + i,
        ))
    return mics


async def simulate(gains: List[float], rounds: int, sink: EventSink, stats: SessionStats,
                   config: Optional[EmitterConfig] = None, latency_s: float = 0.0,
                   echo: bool = False, interference: bool = False,
                   seed: Optional[int] = None) -> SessionStats:
    """
    One coordinator and len(gains) participants on one simulated channel.

    Every participant requests `rounds` rounds; requests arriving together
    are batched by the coordinator.
    """
    channel = AcousticChannel()
    store = SharedStateStore(latency_s=latency_s, sink=sink)
    coordinator = SessionCoordinator(store, SimulatedSpeaker(channel), sink=sink)
    await coordinator.start()

    participants = [
        ParticipantSession(store, coordinator.session_id, f"participant-{i + 1}", mic,
                           config=config, sink=sink)
        for i, mic in enumerate(build_microphones(channel, gains, echo, interference, seed))
    ]
    try:
        for p in participants:
            await p.join()

        for round_no in range(1, rounds + 1):
            print(f"[Round {round_no}] {len(participants)} participant(s) requesting...")
            outcomes = await asyncio.gather(*(p.run_round() for p in participants))
            for p, outcome in zip(participants, outcomes):
                stats.record(p.participant_id, outcome)
                if outcome is not None:
                    cause = f" ({outcome.cause})" if outcome.cause else ""
                    print(f"  {p.participant_id}: {outcome.outcome.value} "
                          f"{outcome.match_count}/{NUM_PULSES}{cause}")
            channel.prune(channel.current_time() - 1.0)
    finally:
        stats.batches = coordinator.scheduler.batches_run
        stats.emissions = len(coordinator.scheduler.emission_windows)
        for p in participants:
            await p.leave()
        await coordinator.end_session()

    return stats


def run_simulation(args: argparse.Namespace) -> int:
    """Simulation entry point."""
    print("=" * 60)
    print("Ultrasonic Handshake Simulation")
    print("=" * 60)

    validate_runtime_config()

    archived = archive_session_logs()
    if archived:
        print(f"Previous session archived to: {archived}")

    gains = args.gains or [0.1] * args.participants
    print(f"\nStarting simulation...")
    print(f"  Participants: {len(gains)} (gains: {', '.join(f'{g:g}' for g in gains)})")
    print(f"  Rounds: {args.rounds}")
    print(f"  Volume: {args.volume}, filter: {not args.no_filter}")
    print("-" * 60)

    config = EmitterConfig(volume=args.volume, use_output_filter=not args.no_filter)
    stats = SessionStats()
    start = time.monotonic()
    reason = "COMPLETE"

    with TelemetryLogger(echo=args.verbose) as logger:
        try:
            asyncio.run(simulate(gains, args.rounds, logger, stats, config=config,
                                 latency_s=args.latency, echo=args.echo,
                                 interference=args.interference, seed=args.seed))
        except KeyboardInterrupt:
            print("\n\nSimulation interrupted")
            reason = "INTERRUPTED"
        except HardwareAcquisitionError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

    print_session_summary(reason, stats, time.monotonic() - start)
    return 0


async def _autotest(args: argparse.Namespace, sink: EventSink) -> AutoTestRunner:
    if args.hardware:
        from audio_io import SoundDeviceInput, SoundDeviceOutput
        speaker, mic = SoundDeviceOutput(), SoundDeviceInput()
    else:
        channel = AcousticChannel()
        speaker = SimulatedSpeaker(channel)
        mic = SimulatedMicrophone(channel, gain=args.gain, seed=args.seed)

    runner = AutoTestRunner.local(
        PulseEmitter(speaker, sink), SpectralDetector(mic, sink=sink),
        volumes=args.volumes, tests_per_config=args.tests,
        use_output_filter=not args.no_filter, sink=sink,
    )
    try:
        await runner.run()
    except asyncio.CancelledError:
        runner.stop()
        raise
    return runner


def run_autotest(args: argparse.Namespace) -> int:
    print("=" * 60)
    print("Auto-Test (LOCAL MODE)")
    print("=" * 60)
    validate_runtime_config()

    with TelemetryLogger(echo=args.verbose) as logger:
        try:
            runner = asyncio.run(_autotest(args, logger))
        except HardwareAcquisitionError as e:
            print(f"ERROR: Failed to init local audio: {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\n\nAuto-test interrupted")
            return 0

    print(runner.report())
    return 0


def run_analyze(args: argparse.Namespace) -> int:
    """Decode every recording in a directory as one stream."""
    try:
        env = AudioEnvironment(args.input_dir)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    async def analyze():
        detector = SpectralDetector(env)
        await detector.start_recording()
        # The file stream ends on its own; wait for the analysis task to drain it
        while detector.is_recording:
            await asyncio.sleep(0.01)
        peaks = await detector.stop_and_analyze()
        return peaks, detector

    peaks, detector = asyncio.run(analyze())
    print(f"Frames analysed : {detector.frames_analyzed}")
    print(f"Noise floor     : {detector.noise_floor_db:.1f} dB")
    print(f"Peaks           : {len(peaks)}")
    for p in peaks:
        print(f"  {p.timestamp:8.3f}s  {p.frequency_hz:7.0f} Hz  {p.symbol.value}  "
              f"{p.amplitude_db:6.1f} dB  SNR {p.snr_db:5.1f} dB")
    print(f"Pattern         : {pattern_to_string(detected_pattern(peaks))}")
    return 0


def run_export(args: argparse.Namespace) -> int:
    pattern = generate_pattern(NUM_PULSES)
    config = EmitterConfig(volume=args.volume, use_output_filter=not args.no_filter)
    path = write_pattern_wav(args.output, pattern, config, gain=args.gain,
                             noise_std=args.noise, seed=args.seed)
    print(f"Wrote {path} with pattern {pattern_to_string(pattern)}")
    return 0


def run_stats(args: argparse.Namespace) -> int:
    stats = security_stats(args.pulses, args.threshold)
    print(f"Pattern length  : {args.pulses}")
    print(f"Pass threshold  : {stats['threshold']}/{args.pulses}")
    print(f"Patterns        : {stats['patterns']}")
    print(f"Blind-guess pass: {100.0 * stats['guess_rate']:.2f}%")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ultrasonic co-location handshake")
    sub = parser.add_subparsers(dest="command", required=True)

    sim = sub.add_parser("simulate", help="Run a simulated session")
    sim.add_argument("--participants", type=int, default=2)
    sim.add_argument("--gains", type=float, nargs="+", help="Path gain per participant (0 = out of range)")
    sim.add_argument("--rounds", type=int, default=3)
    sim.add_argument("--volume", type=float, default=0.75)
    sim.add_argument("--no-filter", action="store_true")
    sim.add_argument("--latency", type=float, default=0.0, help="Store notification latency (s)")
    sim.add_argument("--echo", action="store_true", help="Add a room reflection")
    sim.add_argument("--interference", action="store_true", help="Add an off-carrier tone")
    sim.add_argument("--seed", type=int)
    sim.add_argument("--verbose", action="store_true")
    sim.set_defaults(func=run_simulation)

    auto = sub.add_parser("autotest", help="Volume A/B test in loopback")
    auto.add_argument("--volumes", type=float, nargs="+", default=list(VOLUME_PRESETS))
    auto.add_argument("--tests", type=int, default=TESTS_PER_CONFIG)
    auto.add_argument("--no-filter", action="store_true")
    auto.add_argument("--gain", type=float, default=0.3)
    auto.add_argument("--hardware", action="store_true", help="Use the real speaker and microphone")
    auto.add_argument("--seed", type=int)
    auto.add_argument("--verbose", action="store_true")
    auto.set_defaults(func=run_autotest)

    analyze = sub.add_parser("analyze", help="Decode recordings")
    analyze.add_argument("input_dir", nargs="?", default=CAPTURE_DIR)
    analyze.set_defaults(func=run_analyze)

    export = sub.add_parser("export", help="Write an emission to a WAV file")
    export.add_argument("output")
    export.add_argument("--volume", type=float, default=0.75)
    export.add_argument("--no-filter", action="store_true")
    export.add_argument("--gain", type=float, default=1.0)
    export.add_argument("--noise", type=float, default=0.0)
    export.add_argument("--seed", type=int)
    export.set_defaults(func=run_export)

    stats = sub.add_parser("stats", help="Security figures of the pass threshold")
    stats.add_argument("--pulses", type=int, default=NUM_PULSES)
    stats.add_argument("--threshold", type=int, default=PASS_THRESHOLD)
    stats.set_defaults(func=run_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
