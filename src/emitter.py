"""
Ultrasonic pulse emitter.

Handles:
- Pulse planning: every start time computed upfront from one hardware
  clock reading, so scheduling is immune to event-loop jitter
- Pulse synthesis: sine carrier with a linear fade-in/fade-out envelope
- Optional output highpass (cascaded biquads) against audible clicks
- Optional AGC warm-up pulse ahead of the pattern
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence

import librosa
import numpy as np
from scipy import signal

from comms import EventSink, NullEventSink
from config import (
    FADE_IN_MS, FADE_OUT_MS, SCHEDULE_LEAD_MS, EMIT_TAIL_MS,
    FILTER_STAGES, WARMUP_PULSE_MS, WARMUP_FREQ_HZ
)
from patterns import Symbol, pattern_to_string
from records import EmissionError, EmitterConfig, HardwareAcquisitionError

# Ring-down room after each pulse for the highpass tail.
FILTER_TAIL_S = 0.01


@dataclass(frozen=True)
class PulseSchedule:
    """One scheduled pulse on the output device clock."""
    start_time: float
    frequency: float
    duration_s: float
    warmup: bool = False

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration_s


def carrier_for(symbol: Symbol, config: EmitterConfig) -> float:
    symbol = Symbol(symbol)
    if symbol == Symbol.HIGH:
        return config.freq_high
    if symbol == Symbol.LOW:
        return config.freq_low
    raise ValueError(f"Symbol {symbol.value!r} cannot be emitted")


def plan_pulses(
    pattern: Sequence[Symbol],
    config: EmitterConfig,
    start_time: float,
    warmup_ms: float = 0.0
) -> List[PulseSchedule]:
    """
    Lay out every pulse of a pattern relative to one clock reading.

    Args:
        pattern: Symbols to emit
        config: Emission parameters
        start_time: Device-clock time of the first pulse (seconds)
        warmup_ms: Length of a leading warm-up pulse; 0 disables it

    Returns:
        PulseSchedule list in emission order (warm-up first if present)
    """
    duration = config.pulse_duration_ms / 1000.0
    gap = config.pulse_gap_ms / 1000.0
    schedule: List[PulseSchedule] = []
    t = start_time

    if warmup_ms > 0:
        schedule.append(PulseSchedule(t, WARMUP_FREQ_HZ, warmup_ms / 1000.0, warmup=True))
        t += warmup_ms / 1000.0 + gap

    for i, symbol in enumerate(pattern):
        schedule.append(PulseSchedule(t, carrier_for(symbol, config), duration))
        t += duration
        if i < len(pattern) - 1:
            t += gap

    return schedule


def pulse_envelope(num_samples: int, volume: float, sample_rate: int) -> np.ndarray:
    """Linear envelope: silence -> fade in -> hold -> fade out -> silence."""
    duration = num_samples / sample_rate
    fade_in = min(FADE_IN_MS / 1000.0, duration / 2)
    fade_out = min(FADE_OUT_MS / 1000.0, duration - fade_in)
    t = np.arange(num_samples) / sample_rate
    return np.interp(
        t,
        [0.0, fade_in, duration - fade_out, duration],
        [0.0, volume, volume, 0.0],
    ).astype(np.float32)


def synthesize_pulse(frequency: float, volume: float, duration_s: float,
                     sample_rate: int) -> np.ndarray:
    """Sine pulse with fade envelope, float32."""
    num_samples = max(1, int(round(duration_s * sample_rate)))
    carrier = librosa.tone(frequency, sr=sample_rate, length=num_samples)
    return (carrier * pulse_envelope(num_samples, volume, sample_rate)).astype(np.float32)


@lru_cache(maxsize=16)
def highpass_sos(cutoff_hz: float, sample_rate: int, stages: int = FILTER_STAGES) -> np.ndarray:
    """
    Cascade of identical 2nd-order Butterworth highpass sections (Q=0.707).

    Each section is one biquad; `stages` of them in series steepen the
    rolloff below the cutoff.
    """
    section = signal.butter(2, cutoff_hz, btype='highpass', fs=sample_rate, output='sos')
    return np.tile(section, (stages, 1))


def apply_output_filter(samples: np.ndarray, cutoff_hz: float, sample_rate: int) -> np.ndarray:
    """Filter a pulse, padded so the highpass ring-down is kept."""
    padded = np.concatenate([samples, np.zeros(int(FILTER_TAIL_S * sample_rate), dtype=np.float32)])
    return signal.sosfilt(highpass_sos(cutoff_hz, sample_rate), padded).astype(np.float32)


def render_pattern(pattern: Sequence[Symbol], config: EmitterConfig, sample_rate: int,
                   lead_s: float = 0.0, warmup_ms: float = 0.0) -> np.ndarray:
    """
    Render a whole emission into one buffer starting at t=0.

    Same pulses the emitter schedules, laid out offline (used for WAV export
    and loopback fixtures).
    """
    pulses = plan_pulses(pattern, config, lead_s, warmup_ms)
    total = pulses[-1].end_time + FILTER_TAIL_S + EMIT_TAIL_MS / 1000.0
    out = np.zeros(int(np.ceil(total * sample_rate)), dtype=np.float32)
    for pulse in pulses:
        samples = synthesize_pulse(pulse.frequency, config.volume, pulse.duration_s, sample_rate)
        if config.use_output_filter:
            samples = apply_output_filter(samples, config.filter_cutoff_hz, sample_rate)
        start = int(round(pulse.start_time * sample_rate))
        end = min(len(out), start + len(samples))
        out[start:end] += samples[:end - start]
    return out


class PulseEmitter:
    """
    Schedules FSK pulses on an audio output device.

    The device must provide:
        open(), close(), sample_rate,
        current_time() -> float   (hardware clock, seconds)
        schedule(samples, start_time)
    """

    def __init__(self, device, sink: Optional[EventSink] = None,
                 warmup_ms: float = WARMUP_PULSE_MS):
        """
        Args:
            device: Audio output device
            sink: Event sink
            warmup_ms: Warm-up pulse length; 0 disables it
        """
        self.device = device
        self.sink = sink or NullEventSink()
        self.warmup_ms = warmup_ms
        self._opened = False

    async def init(self) -> None:
        """
        Acquire the output device.

        Raises:
            HardwareAcquisitionError: Device unavailable (fatal, not retried)
        """
        if self._opened:
            return
        try:
            self.device.open()
        except HardwareAcquisitionError as e:
            self.sink.error("emitter", f"Output device unavailable: {e}")
            raise
        self._opened = True
        self.sink.info("emitter", f"Output device opened at {self.device.sample_rate} Hz")

    async def emit(self, pattern: Sequence[Symbol], config: EmitterConfig) -> List[float]:
        """
        Emit a pattern and wait until it has fully played.

        Args:
            pattern: Symbols to emit
            config: Emission parameters

        Returns:
            Carrier frequency of each pattern pulse, in order

        Raises:
            EmissionError: The channel rejected a pulse (raised once the
                pulses scheduled before it have finished playing)
        """
        if not self._opened:
            await self.init()

        sample_rate = self.device.sample_rate
        self.sink.info("emitter", f"Emitting {len(pattern)} pulses: {pattern_to_string(pattern)}")
        self.sink.debug("emitter", f"Config: vol={config.volume}, dur={config.pulse_duration_ms}ms, "
                                   f"gap={config.pulse_gap_ms}ms, filter={config.use_output_filter}")

        start_time = self.device.current_time() + SCHEDULE_LEAD_MS / 1000.0
        pulses = plan_pulses(pattern, config, start_time, self.warmup_ms)

        rendered = []
        for pulse in pulses:
            samples = synthesize_pulse(pulse.frequency, config.volume, pulse.duration_s, sample_rate)
            if config.use_output_filter:
                samples = apply_output_filter(samples, config.filter_cutoff_hz, sample_rate)
            rendered.append(samples)

        last_end: Optional[float] = None
        try:
            for pulse, samples in zip(pulses, rendered):
                self.device.schedule(samples, pulse.start_time)
                last_end = pulse.end_time
        except EmissionError:
            # Pulses already handed to the device still play; a retry starts after them
            if last_end is not None:
                await self._wait_until(last_end)
            raise

        await self._wait_until(pulses[-1].end_time)

        emitted = [p.frequency for p in pulses if not p.warmup]
        self.sink.success("emitter", "Emission complete. Freqs: " +
                          ", ".join(f"{f:.0f}" for f in emitted))
        return emitted

    async def _wait_until(self, end_time: float) -> None:
        remaining = end_time - self.device.current_time() + EMIT_TAIL_MS / 1000.0
        await asyncio.sleep(max(0.0, remaining))

    async def cleanup(self) -> None:
        if self._opened:
            self.device.close()
            self._opened = False
            self.sink.debug("emitter", "Output device closed")
