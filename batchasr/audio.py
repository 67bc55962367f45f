"""Audio file decoding."""

import logging
from pathlib import Path
from typing import Union

import numpy as np
from faster_whisper.audio import decode_audio

logger = logging.getLogger(__name__)

# Settings expected by the feature extractor unless the model says otherwise
SAMPLE_RATE = 16000
AUDIO_DTYPE = np.float32


def load_audio(path: Union[str, Path], sampling_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode an audio file into mono float32 samples in [-1, 1].

    Any format supported by PyAV is accepted; the audio is resampled to
    ``sampling_rate``.

    Args:
        path: Audio file to decode.
        sampling_rate: Target sample rate in Hz.

    Returns:
        1-D float32 array of samples.
    """
    audio = decode_audio(str(path), sampling_rate=sampling_rate)
    logger.debug(
        f"Decoded {path}: {len(audio)} samples ({len(audio) / sampling_rate:.2f}s)"
    )
    return np.asarray(audio, dtype=AUDIO_DTYPE)
