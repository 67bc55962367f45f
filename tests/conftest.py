"""Shared fixtures: small on-disk model artifacts and a fake decoder."""

import json
import threading
import zlib
from pathlib import Path
from typing import List
from unittest.mock import patch

import numpy as np
import pytest

TOKENS = ["#", "_", "a", "b", "c"]
FEATURE_SIZE = 16
HIDDEN_SIZE = 12

DECODER_OPTIONS = {
    "beamSize": 100,
    "beamSizeToken": 10,
    "beamThreshold": 25.0,
    "lmWeight": 0.5,
    "wordScore": 1.0,
    "unkScore": -10.0,
    "silScore": 0.0,
    "logAdd": False,
    "criterionType": 1,
}


def write_archive(path: Path, **arrays) -> None:
    # np.savez appends ".npz" to string paths, so write through a handle
    with open(path, "wb") as f:
        np.savez(f, **arrays)


def write_feature_module(path: Path, feature_size: int = FEATURE_SIZE) -> None:
    write_archive(
        path,
        feature_size=np.int64(feature_size),
        sampling_rate=np.int64(16000),
        hop_length=np.int64(160),
        n_fft=np.int64(400),
    )


def write_acoustic_module(
    path: Path, n_inputs: int = FEATURE_SIZE, n_outputs: int = len(TOKENS)
) -> None:
    rng = np.random.default_rng(1234)
    write_archive(
        path,
        weight_0=rng.normal(size=(n_inputs, HIDDEN_SIZE)).astype(np.float32),
        bias_0=rng.normal(size=HIDDEN_SIZE).astype(np.float32),
        weight_1=rng.normal(size=(HIDDEN_SIZE, n_outputs)).astype(np.float32),
        bias_1=rng.normal(size=n_outputs).astype(np.float32),
    )


def synthetic_audio(path, sampling_rate: int = 16000) -> np.ndarray:
    """Deterministic one-second signal derived from the file name."""
    seed = zlib.crc32(Path(path).name.encode("utf-8"))
    rng = np.random.default_rng(seed)
    return rng.uniform(-0.5, 0.5, sampling_rate).astype(np.float32)


class GreedyDecoder:
    """Best-path decoder: collapse repeats, drop blank and silence."""

    def __init__(self, tokens: List[str]):
        self.tokens = tokens

    def decode(self, emissions: np.ndarray) -> List[str]:
        best = np.argmax(emissions, axis=1)
        letters = []
        previous = None
        for index in best:
            if index != previous and self.tokens[index] not in ("#", "_"):
                letters.append(self.tokens[index])
            previous = index
        return ["".join(letters)] if letters else []


class FakeDecoderFactory:
    """Stands in for DecoderFactory without a language model on disk."""

    instances: List["FakeDecoderFactory"] = []

    def __init__(self, tokens, lexicon_path, language_model_path, transitions, *args, **kwargs):
        self.tokens = list(tokens)
        self.lexicon_path = lexicon_path
        self.language_model_path = language_model_path
        self.transitions = transitions
        self.created = 0
        self._lock = threading.Lock()
        FakeDecoderFactory.instances.append(self)

    @property
    def num_tokens(self) -> int:
        return len(self.tokens)

    def validate(self, options) -> None:
        pass

    def create(self, options) -> GreedyDecoder:
        with self._lock:
            self.created += 1
        return GreedyDecoder(self.tokens)


@pytest.fixture
def model_dir(tmp_path):
    """Directory with every artifact a run needs."""
    directory = tmp_path / "model"
    directory.mkdir()
    write_feature_module(directory / "feature_extractor.bin")
    write_acoustic_module(directory / "acoustic_model.bin")
    (directory / "tokens.txt").write_text("\n".join(TOKENS) + "\n", encoding="utf-8")
    (directory / "decoder_options.json").write_text(
        json.dumps(DECODER_OPTIONS), encoding="utf-8"
    )
    (directory / "lexicon.txt").write_text("cab c a b\nab a b\n", encoding="utf-8")
    (directory / "language_model.bin").write_bytes(b"kenlm placeholder")
    return directory


@pytest.fixture
def fake_decoder_factory():
    """Patch the loader to build FakeDecoderFactory instances."""
    FakeDecoderFactory.instances = []
    with patch("batchasr.resources.DecoderFactory", FakeDecoderFactory):
        yield FakeDecoderFactory
