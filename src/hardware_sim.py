"""
Hardware simulation for the ultrasonic handshake.

Simulates:
- A shared acoustic channel ("the air") on a monotonic hardware clock
- Speaker devices scheduling sample bursts onto the channel
- Microphone devices hearing the channel with attenuation, reflections,
  interference tones, ambient hum and in-band noise
- File-backed microphone input streamed from recordings in a directory
"""

import asyncio
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import librosa
import numpy as np
import soundfile as sf

from comms import EventSink, NullEventSink
from config import INPUT_SAMPLE_RATE, OUTPUT_SAMPLE_RATE, CAPTURE_DIR
from emitter import render_pattern
from patterns import Symbol
from records import EmitterConfig, EmissionError, HardwareAcquisitionError


class AcousticChannel:
    """
    Shared simulated air.

    Bursts are stored on an absolute sample timeline derived from
    time.monotonic(), the clock asyncio sleeps on, so scheduled audio and
    captured frames line up regardless of task scheduling.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self._origin = time.monotonic()
        self._bursts: List[Tuple[int, np.ndarray]] = []

    def current_time(self) -> float:
        """Channel clock in seconds."""
        return time.monotonic() - self._origin

    def to_sample(self, t: float) -> int:
        return int(round(t * self.sample_rate))

    def add_burst(self, samples: np.ndarray, start_time: float) -> None:
        self._bursts.append((self.to_sample(start_time), np.asarray(samples, dtype=np.float32)))

    def render(self, start_sample: int, num_samples: int) -> np.ndarray:
        """Sum of all bursts overlapping [start_sample, start_sample + num_samples)."""
        out = np.zeros(num_samples, dtype=np.float32)
        end_sample = start_sample + num_samples
        for burst_start, samples in self._bursts:
            burst_end = burst_start + len(samples)
            if burst_end <= start_sample or burst_start >= end_sample:
                continue
            lo = max(start_sample, burst_start)
            hi = min(end_sample, burst_end)
            out[lo - start_sample:hi - start_sample] += samples[lo - burst_start:hi - burst_start]
        return out

    def prune(self, before_time: float) -> None:
        """Forget bursts that ended before `before_time`."""
        cutoff = self.to_sample(before_time)
        self._bursts = [(s, b) for s, b in self._bursts if s + len(b) > cutoff]


class SimulatedSpeaker:
    """Output device playing onto an AcousticChannel."""

    def __init__(self, channel: AcousticChannel, available: bool = True, fail_emissions: int = 0):
        """
        Args:
            channel: Shared channel
            available: False makes open() fail like a missing device
            fail_emissions: Number of upcoming schedule() calls that fail
        """
        self.channel = channel
        self.available = available
        self.fail_emissions = fail_emissions
        self.is_open = False
        self.scheduled: List[Tuple[float, float]] = []

    @property
    def sample_rate(self) -> int:
        return self.channel.sample_rate

    def open(self) -> None:
        if not self.available:
            raise HardwareAcquisitionError("speaker not available")
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def current_time(self) -> float:
        return self.channel.current_time()

    def schedule(self, samples: np.ndarray, start_time: float) -> None:
        if self.fail_emissions > 0:
            self.fail_emissions -= 1
            raise EmissionError("output underrun")
        self.channel.add_burst(samples, start_time)
        self.scheduled.append((start_time, start_time + len(samples) / self.sample_rate))


class SimulatedMicrophone:
    """
    Input device hearing an AcousticChannel.

    Everything in the band except the channel is controlled by the
    constructor so that tests can place a listener close, far, in an
    echoing room or next to an interfering source.
    """

    def __init__(
        self,
        channel: AcousticChannel,
        gain: float = 0.1,
        reflections: Sequence[Tuple[float, float]] = (),
        interference: Sequence[Tuple[float, float]] = (),
        ambient_level: float = 0.02,
        noise_std: float = 1e-6,
        permission_denied: bool = False,
        seed: Optional[int] = None
    ):
        """
        Args:
            channel: Shared channel
            gain: Path gain from the speaker (0 = out of range)
            reflections: (delay_s, relative_gain) echoes of the direct path
            interference: (frequency_hz, amplitude) continuous tones
            ambient_level: Amplitude of low-frequency room hum
            noise_std: White noise standard deviation
            permission_denied: open() fails like a denied microphone
            seed: RNG seed for the noise
        """
        self.channel = channel
        self.gain = gain
        self.reflections = list(reflections)
        self.interference = list(interference)
        self.ambient_level = ambient_level
        self.noise_std = noise_std
        self.permission_denied = permission_denied
        self.rng = np.random.default_rng(seed)
        self.open_count = 0
        self.active_streams = 0

    def open(self, frame_size: int) -> "SimulatedInputStream":
        if self.permission_denied:
            raise HardwareAcquisitionError("microphone permission denied")
        self.open_count += 1
        self.active_streams += 1
        return SimulatedInputStream(self, frame_size)

    def capture(self, start_sample: int, num_samples: int) -> np.ndarray:
        sr = self.channel.sample_rate
        out = self.channel.render(start_sample, num_samples) * self.gain
        for delay_s, rel_gain in self.reflections:
            delay = int(round(delay_s * sr))
            out += self.channel.render(start_sample - delay, num_samples) * self.gain * rel_gain

        t = (start_sample + np.arange(num_samples)) / sr
        for freq, amplitude in self.interference:
            out += amplitude * np.sin(2 * np.pi * freq * t)
        if self.ambient_level > 0:
            out += self.ambient_level * (np.sin(2 * np.pi * 120 * t) + 0.5 * np.sin(2 * np.pi * 1000 * t))
        if self.noise_std > 0:
            out += self.rng.normal(0.0, self.noise_std, num_samples)
        return out.astype(np.float32)


class SimulatedInputStream:
    """Frames of one recording session, paced by the channel clock."""

    def __init__(self, device: SimulatedMicrophone, frame_size: int):
        self.device = device
        self.frame_size = frame_size
        self.sample_rate = device.channel.sample_rate
        self._next_sample = device.channel.to_sample(device.channel.current_time())
        self._closed = False

    async def read(self) -> Optional[Tuple[np.ndarray, float]]:
        """Wait for the next full frame; None once closed."""
        if self._closed:
            return None
        frame_end = (self._next_sample + self.frame_size) / self.sample_rate
        delay = frame_end - self.device.channel.current_time()
        if delay > 0:
            await asyncio.sleep(delay)
        if self._closed:
            return None
        samples = self.device.capture(self._next_sample, self.frame_size)
        self._next_sample += self.frame_size
        return samples, frame_end

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.device.active_streams -= 1


class AudioEnvironment:
    """
    Microphone input streamed from recordings.

    - Scans a directory for .wav and .flac files, processed alphabetically
    - Resamples to INPUT_SAMPLE_RATE if needed, stereo -> mono
    - Files form one continuous stream; the final partial frame is zero-padded
    - Timestamps are the stream position in seconds
    """

    SUPPORTED_EXTENSIONS = {'.wav', '.flac'}

    def __init__(self, input_dir: str = CAPTURE_DIR, sample_rate: int = INPUT_SAMPLE_RATE,
                 sink: Optional[EventSink] = None):
        """
        Raises:
            FileNotFoundError: If directory doesn't exist or contains no audio
        """
        self.input_dir = Path(input_dir)
        self.sample_rate = sample_rate
        self.sink = sink or NullEventSink()
        self._scan_input_directory()

    def _scan_input_directory(self) -> None:
        if not self.input_dir.exists():
            raise FileNotFoundError(f"Input directory not found: {self.input_dir}")

        audio_files = []
        for ext in self.SUPPORTED_EXTENSIONS:
            audio_files.extend(self.input_dir.glob(f"*{ext}"))
        self._files = sorted(audio_files)

        if not self._files:
            raise FileNotFoundError(
                f"No audio files found in {self.input_dir}. "
                f"Supported formats: {self.SUPPORTED_EXTENSIONS}"
            )
        self.sink.info("environment", f"Found {len(self._files)} audio file(s): "
                                      + ", ".join(f.name for f in self._files))

    def load(self) -> np.ndarray:
        """All files as one mono float32 stream at the target sample rate."""
        parts = []
        for path in self._files:
            try:
                data, sr = sf.read(path, dtype='float32')
            except RuntimeError as e:
                self.sink.error("environment", f"Failed to load {path.name}: {e}")
                continue
            if data.ndim > 1:
                data = np.mean(data, axis=1)
            if sr != self.sample_rate:
                self.sink.debug("environment", f"Resampling {path.name} from {sr}Hz to {self.sample_rate}Hz")
                data = librosa.resample(data, orig_sr=sr, target_sr=self.sample_rate)
            parts.append(data.astype(np.float32))
        if not parts:
            raise HardwareAcquisitionError(f"No readable audio in {self.input_dir}")
        return np.concatenate(parts)

    def open(self, frame_size: int) -> "FileInputStream":
        return FileInputStream(self.load(), frame_size, self.sample_rate)


class FileInputStream:
    """Frames of a preloaded buffer, delivered as fast as they are consumed."""

    def __init__(self, data: np.ndarray, frame_size: int, sample_rate: int):
        self.data = data
        self.frame_size = frame_size
        self.sample_rate = sample_rate
        self._position = 0
        self._closed = False

    async def read(self) -> Optional[Tuple[np.ndarray, float]]:
        # Yield so a consumer loop never starves the event loop
        await asyncio.sleep(0)
        if self._closed or self._position >= len(self.data):
            return None
        chunk = self.data[self._position:self._position + self.frame_size]
        if len(chunk) < self.frame_size:
            chunk = np.pad(chunk, (0, self.frame_size - len(chunk)))
        self._position += self.frame_size
        return chunk, self._position / self.sample_rate

    def close(self) -> None:
        self._closed = True


def write_pattern_wav(path: str, pattern: Sequence[Symbol], config: EmitterConfig,
                      sample_rate: int = OUTPUT_SAMPLE_RATE, gain: float = 1.0,
                      lead_s: float = 0.2, noise_std: float = 0.0,
                      seed: Optional[int] = None) -> Path:
    """
    Export an emission as a recording, e.g. for offline analysis.

    Args:
        path: Output file (.wav or .flac)
        pattern: Symbols to render
        config: Emission parameters
        sample_rate: Output sample rate
        gain: Path gain applied to the rendered emission
        lead_s: Silence before the first pulse
        noise_std: White noise standard deviation
        seed: RNG seed for the noise

    Returns:
        Path of the written file
    """
    audio = render_pattern(pattern, config, sample_rate, lead_s=lead_s) * gain
    if noise_std > 0:
        audio = audio + np.random.default_rng(seed).normal(0.0, noise_std, len(audio))
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    sf.write(out, audio.astype(np.float32), sample_rate, subtype='FLOAT')
    return out
