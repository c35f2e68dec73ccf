from typing import Tuple, Union

import numpy as np
import soundfile as sf

AudioBuffer = Union[bytes, bytearray, memoryview, np.ndarray]


def to_pcm16_bytes(buffer: AudioBuffer) -> bytes:
    """Normalize a captured buffer to raw PCM16 bytes.

    Byte-like buffers are passed through untouched. Float arrays are treated
    as samples in [-1, 1]; integer arrays are cast to int16.
    """
    if isinstance(buffer, np.ndarray):
        if buffer.ndim > 1:
            buffer = buffer[:, 0]  # mono only
        if np.issubdtype(buffer.dtype, np.floating):
            clipped = np.clip(buffer, -1.0, 1.0)
            return (clipped * 32767).astype("<i2").tobytes()
        return buffer.astype("<i2").tobytes()
    return bytes(buffer)


def load_audio(filepath: str) -> Tuple[np.ndarray, int]:
    """Read an audio file into a mono int16 array and its sample rate."""
    audio, sr = sf.read(filepath)
    if audio.ndim > 1:
        audio = audio[:, 0]
    audio = (np.clip(audio, -1.0, 1.0) * 32767).astype("int16")
    return audio, sr


def chunk_duration_seconds(byte_length: int, sample_rate: int) -> float:
    """Return chunk duration given PCM16 byte length and sample rate."""
    if sample_rate <= 0:
        return 0.0
    bytes_per_sample = 2  # PCM16
    samples = byte_length / bytes_per_sample
    return samples / float(sample_rate)
