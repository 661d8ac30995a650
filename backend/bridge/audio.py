"""PCM audio format helpers"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

SIXTEEN_BIT = 16
BYTES_PER_SAMPLE = 2
VALID_CHANNELS = 1
VALID_SAMPLE_RATES = (8000, 16000, 24000)
DEFAULT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
SILENCE_DBFS = -120.0


@dataclass(frozen=True)
class AudioFormat:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    sample_size_bits: int = SIXTEEN_BIT
    channel_count: int = VALID_CHANNELS


DEFAULT_INPUT_FORMAT = AudioFormat()
OUTPUT_FORMAT = AudioFormat(sample_rate=OUTPUT_SAMPLE_RATE)


def is_valid_format(fmt: AudioFormat) -> bool:
    """Signed 16-bit mono LPCM at 8/16/24 kHz is the only accepted input."""
    valid = (
        fmt.channel_count == VALID_CHANNELS
        and fmt.sample_size_bits == SIXTEEN_BIT
        and fmt.sample_rate in VALID_SAMPLE_RATES
    )
    if not valid:
        logger.error(f"Invalid audio format: {fmt}. Must be PCM signed 16-bit, mono, with sample rate of 8/16/24kHz")
    return valid


def is_whole_frame(pcm: bytes) -> bool:
    return len(pcm) > 0 and len(pcm) % BYTES_PER_SAMPLE == 0


def frame_duration_ms(pcm: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> float:
    return (len(pcm) / (sample_rate * BYTES_PER_SAMPLE)) * 1000.0


def peak_dbfs(pcm: bytes) -> float:
    """Peak level of little-endian int16 PCM in dBFS."""
    usable = len(pcm) - (len(pcm) % BYTES_PER_SAMPLE)
    if usable <= 0:
        return SILENCE_DBFS
    samples = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.int32)
    peak = int(np.max(np.abs(samples)))
    if peak == 0:
        return SILENCE_DBFS
    return 20.0 * math.log10(peak / 32768.0)
