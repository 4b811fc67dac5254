"""
Real audio devices backed by sounddevice (PortAudio).

SoundDeviceOutput mixes scheduled bursts into the output callback against
the DAC clock; SoundDeviceInput hands each captured block to the event loop
through an asyncio.Queue, stamped with the ADC clock.

sounddevice is imported when a device is opened: importing it fails on
hosts without PortAudio, which must not break the simulated path.
"""

import asyncio
import threading
from typing import List, Optional, Tuple

import numpy as np

from config import OUTPUT_SAMPLE_RATE, INPUT_SAMPLE_RATE, FRAME_QUEUE_SIZE
from records import HardwareAcquisitionError


def _load_sounddevice():
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise HardwareAcquisitionError(f"sounddevice unavailable: {e}") from e
    return sd


class SoundDeviceOutput:
    """Speaker. Bursts are placed sample-accurately on the DAC timeline."""

    def __init__(self, device=None, sample_rate: int = OUTPUT_SAMPLE_RATE, blocksize: int = 0):
        self.device = device
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._stream = None
        self._lock = threading.Lock()
        self._bursts: List[Tuple[float, np.ndarray]] = []

    def open(self) -> None:
        sd = _load_sounddevice()
        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate, channels=1, dtype='float32',
                device=self.device, blocksize=self.blocksize, callback=self._callback
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise HardwareAcquisitionError(f"cannot open output device: {e}") from e

    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        with self._lock:
            self._bursts.clear()

    def current_time(self) -> float:
        """PortAudio stream time, the clock outputBufferDacTime is on."""
        if self._stream is None:
            raise HardwareAcquisitionError("output device not open")
        return self._stream.time

    def schedule(self, samples: np.ndarray, start_time: float) -> None:
        with self._lock:
            self._bursts.append((start_time, np.asarray(samples, dtype=np.float32)))

    def _callback(self, outdata, frames, time_info, status):
        out = np.zeros(frames, dtype=np.float32)
        block_start = int(round(time_info.outputBufferDacTime * self.sample_rate))
        block_end = block_start + frames
        with self._lock:
            remaining = []
            for start_time, samples in self._bursts:
                burst_start = int(round(start_time * self.sample_rate))
                burst_end = burst_start + len(samples)
                if burst_start < block_end and burst_end > block_start:
                    lo = max(block_start, burst_start)
                    hi = min(block_end, burst_end)
                    out[lo - block_start:hi - block_start] += samples[lo - burst_start:hi - burst_start]
                if burst_end > block_end:
                    remaining.append((start_time, samples))
            self._bursts = remaining
        outdata[:, 0] = out


class SoundDeviceInput:
    """Microphone. Each open() starts a fresh capture stream."""

    def __init__(self, device=None, sample_rate: int = INPUT_SAMPLE_RATE):
        self.device = device
        self.sample_rate = sample_rate

    def open(self, frame_size: int) -> "SoundDeviceInputStream":
        sd = _load_sounddevice()
        stream = SoundDeviceInputStream(frame_size, self.sample_rate)
        try:
            stream.start(sd, self.device)
        except (sd.PortAudioError, ValueError) as e:
            raise HardwareAcquisitionError(f"cannot open input device: {e}") from e
        return stream


class SoundDeviceInputStream:
    """
    Capture stream delivering (samples, adc_time) to the event loop.

    The PortAudio callback runs on its own thread; frames are passed over
    with call_soon_threadsafe. When the consumer falls behind the oldest
    frame is dropped.
    """

    def __init__(self, frame_size: int, sample_rate: int):
        self.frame_size = frame_size
        self.sample_rate = sample_rate
        self.dropped_frames = 0
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=FRAME_QUEUE_SIZE)
        self._stream = None
        self._closed = False

    def start(self, sd, device) -> None:
        self._stream = sd.InputStream(
            samplerate=self.sample_rate, channels=1, dtype='float32',
            blocksize=self.frame_size, device=device, callback=self._callback
        )
        self._stream.start()

    def _callback(self, indata, frames, time_info, status):
        frame = np.asarray(indata[:, 0], dtype=np.float32).copy()
        timestamp = time_info.inputBufferAdcTime + frames / self.sample_rate
        self._loop.call_soon_threadsafe(self._put, (frame, timestamp))

    def _put(self, item: Optional[Tuple[np.ndarray, float]]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_frames += 1
        self._queue.put_nowait(item)

    async def read(self) -> Optional[Tuple[np.ndarray, float]]:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        # Wake a pending reader
        self._put(None)
