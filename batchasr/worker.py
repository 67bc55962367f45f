"""Per-file transcription: audio in, transcript file out."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

from .audio import load_audio
from .decoder import DecoderFactory, DecoderOptions
from .model import ModelBundle

logger = logging.getLogger(__name__)

CLIPPING_LEVEL = 1.0


class TranscriptionResult:
    """Words decoded from one audio file, with metadata."""

    def __init__(
        self,
        words: List[str],
        num_frames: int,
        duration: Optional[float] = None,
    ):
        self.words = words
        self.num_frames = num_frames
        self.duration = duration

    @property
    def text(self) -> str:
        return " ".join(self.words)

    def __str__(self) -> str:
        return self.text


def audio_file_to_words(
    input_path: Union[str, Path],
    model_bundle: ModelBundle,
    decoder_factory: DecoderFactory,
    decoder_options: DecoderOptions,
    n_tokens: int,
) -> TranscriptionResult:
    """Transcribe one audio file.

    None of the shared arguments are modified, so this may run concurrently
    with other calls using the same bundle, factory and options.

    Args:
        input_path: Audio file to transcribe.
        model_bundle: Shared feature + acoustic pipeline.
        decoder_factory: Shared factory; a private decoder is built from it.
        decoder_options: Shared beam-search settings.
        n_tokens: Expected width of the acoustic output.

    Returns:
        The decoded words.

    Raises:
        ValueError: If the file has no audio or the model output has the
            wrong width.
    """
    audio = load_audio(input_path, sampling_rate=model_bundle.sampling_rate)
    if audio.size == 0:
        raise ValueError(f"No audio samples in {input_path}")

    peak = float(np.max(np.abs(audio)))
    if peak >= CLIPPING_LEVEL:
        logger.warning(f"Audio in {input_path} may be clipped (peak={peak:.2f})")

    emissions = model_bundle(audio)
    if emissions.ndim != 2 or emissions.shape[1] != n_tokens:
        raise ValueError(
            f"Acoustic output shape {emissions.shape} does not match "
            f"{n_tokens} tokens"
        )

    decoder = decoder_factory.create(decoder_options)
    words = decoder.decode(emissions)
    if not words:
        logger.warning(f"No words decoded from {input_path}")

    return TranscriptionResult(
        words=words,
        num_frames=emissions.shape[0],
        duration=audio.size / model_bundle.sampling_rate,
    )


def audio_file_to_words_file(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    model_bundle: ModelBundle,
    decoder_factory: DecoderFactory,
    decoder_options: DecoderOptions,
    n_tokens: int,
) -> TranscriptionResult:
    """Transcribe one audio file and write the words to ``output_path``."""
    result = audio_file_to_words(
        input_path, model_bundle, decoder_factory, decoder_options, n_tokens
    )

    with open(output_path, "w", encoding="utf-8") as f:
        f.write(result.text + "\n")

    logger.debug(
        f"Wrote {len(result.words)} words ({result.num_frames} frames) to {output_path}"
    )
    return result
