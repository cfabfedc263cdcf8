"""
Audio framing and ingest buffering for Twilio media streams.

Twilio forks caller audio as mu-law 8kHz mono, 20ms per frame. Deepgram accepts
encoding=mulaw&sample_rate=8000 directly, so frames are forwarded untouched.

While no recognizer connection is ready, frames are held in a bounded FIFO.
A phone call cannot be paused, so once the buffer is full further frames are
dropped rather than blocking the inbound stream or growing without limit.
"""

from collections import deque
from typing import Deque, List

TWILIO_SAMPLE_RATE = 8000
TWILIO_ENCODING = "mulaw"
TWILIO_CHANNELS = 1
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

DEFAULT_BUFFER_CAPACITY = 500  # ~10 seconds of 20ms frames


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """
    Duration of mu-law audio (1 byte per sample).

    Args:
        audio_bytes: Raw mu-law bytes
        sample_rate: Sample rate in Hz

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes or sample_rate <= 0:
        return 0.0
    return len(audio_bytes) / sample_rate * 1000


class FrameBuffer:
    """
    Bounded, order-preserving buffer of raw audio frames.

    Keeps the earliest `capacity` frames; later frames are counted and dropped.
    """

    def __init__(self, capacity: int = DEFAULT_BUFFER_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._frames: Deque[bytes] = deque()
        self.dropped = 0
        self.total_dropped = 0

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def is_full(self) -> bool:
        return len(self._frames) >= self.capacity

    @property
    def buffered_ms(self) -> float:
        return sum(get_audio_duration_ms(f) for f in self._frames)

    def append(self, frame: bytes) -> bool:
        """Buffer a frame. Returns False if it was dropped."""
        if self.is_full:
            self.dropped += 1
            self.total_dropped += 1
            return False
        self._frames.append(frame)
        return True

    def drain(self) -> List[bytes]:
        """Return all buffered frames in arrival order and clear the buffer."""
        frames = list(self._frames)
        self._frames.clear()
        self.dropped = 0
        return frames

    def clear(self) -> None:
        self._frames.clear()
        self.dropped = 0
