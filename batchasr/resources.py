"""Loading of the shared, read-only inference resources."""

import contextlib
import logging
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from flashlight.lib.text.decoder import SmearingMode
from pydantic import ValidationError

from .config import RunConfig, split_lines
from .decoder import DecoderFactory, DecoderOptions
from .errors import DeserializationError, OpenFailure, SetupError
from .model import AcousticScoringStage, FeatureExtractionStage, ModelBundle

logger = logging.getLogger(__name__)

TRANSITIONS_HEADER = np.dtype("<u8")
TRANSITIONS_VALUE = np.dtype("<f4")


@contextlib.contextmanager
def time_elapsed(description: str) -> Iterator[None]:
    """Log how long the wrapped block took."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        logger.info(f"{description} elapsed time={elapsed:.3f}s")


def read_bytes(path: Path, description: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise OpenFailure(path, description) from e


def read_text(path: Path, description: str) -> str:
    """Read a UTF-8 text file.

    Raises:
        OpenFailure: If the file can't be opened.
        DeserializationError: If the file is not valid UTF-8.
    """
    data = read_bytes(path, description)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DeserializationError(f"{description} file={path} is not UTF-8: {e}") from e


def read_parameter_archive(path: Path, description: str) -> Dict[str, np.ndarray]:
    """Read every array from an ``.npz`` parameter archive.

    Raises:
        OpenFailure: If the file can't be opened.
        DeserializationError: If the file is not an ``.npz`` archive.
    """
    try:
        f = open(path, "rb")
    except OSError as e:
        raise OpenFailure(path, description) from e

    with f:
        try:
            archive = np.load(f, allow_pickle=False)
            if not isinstance(archive, np.lib.npyio.NpzFile):
                raise DeserializationError(
                    f"{description} file={path} is a single array, expected an archive"
                )
            with archive:
                return {name: archive[name] for name in archive.files}
        except SetupError:
            raise
        except (ValueError, OSError, EOFError, zipfile.BadZipFile) as e:
            raise DeserializationError(
                f"{description} file={path} could not be deserialized: {e}"
            ) from e


def parse_tokens(text: str) -> List[str]:
    """Split a tokens file into one token per line."""
    return split_lines(text)


def parse_transitions(data: bytes) -> np.ndarray:
    """Parse a length-prefixed float32 vector.

    Layout: little-endian uint64 element count, then that many float32 values.

    Raises:
        DeserializationError: If the byte count doesn't match the header.
    """
    header_size = TRANSITIONS_HEADER.itemsize
    if len(data) < header_size:
        raise DeserializationError(
            f"transitions data is {len(data)} bytes, too short for its header"
        )
    count = int(np.frombuffer(data, dtype=TRANSITIONS_HEADER, count=1)[0])
    payload = data[header_size:]
    if len(payload) != count * TRANSITIONS_VALUE.itemsize:
        raise DeserializationError(
            f"transitions header declares {count} values but payload has "
            f"{len(payload)} bytes"
        )
    values = np.frombuffer(payload, dtype=TRANSITIONS_VALUE).astype(np.float32)
    values.flags.writeable = False
    return values


@dataclass(frozen=True)
class Resources:
    """Everything the per-file tasks share. Owned by the run."""

    model_bundle: ModelBundle
    decoder_factory: DecoderFactory
    decoder_options: DecoderOptions
    tokens: Tuple[str, ...]

    @property
    def num_tokens(self) -> int:
        return len(self.tokens)


class ResourceLoader:
    """Loads model artifacts and decoder configuration, one after another."""

    def __init__(self, config: RunConfig):
        self.config = config

    def load_feature_stage(self) -> FeatureExtractionStage:
        path = self.config.input_path(self.config.feature_module_file)
        with time_elapsed("features model file loading"):
            params = read_parameter_archive(path, "feature module")
            return FeatureExtractionStage.from_parameters(params)

    def load_acoustic_stage(self) -> AcousticScoringStage:
        path = self.config.input_path(self.config.acoustic_module_file)
        with time_elapsed("acoustic model file loading"):
            params = read_parameter_archive(path, "acoustic model")
            return AcousticScoringStage.from_parameters(params)

    def load_tokens(self) -> List[str]:
        path = self.config.input_path(self.config.tokens_file)
        with time_elapsed("tokens file loading"):
            tokens = parse_tokens(read_text(path, "tokens"))
        if not tokens:
            raise DeserializationError(f"tokens file={path} contains no tokens")
        logger.info(f"Tokens loaded - {len(tokens)} tokens")
        return tokens

    def load_decoder_options(self) -> DecoderOptions:
        path = self.config.input_path(self.config.decoder_options_file)
        with time_elapsed("decoder options file loading"):
            text = read_text(path, "decoder options")
            try:
                return DecoderOptions.model_validate_json(text)
            except ValidationError as e:
                raise DeserializationError(
                    f"decoder options file={path} is invalid: {e}"
                ) from e

    def load_transitions(self) -> Optional[np.ndarray]:
        path = self.config.transitions_path
        if path is None:
            return None
        with time_elapsed("transitions file loading"):
            return parse_transitions(read_bytes(path, "transition parameter"))

    def create_decoder_factory(
        self, tokens: List[str], transitions: Optional[np.ndarray]
    ) -> DecoderFactory:
        lexicon_path = self.config.input_path(self.config.lexicon_file)
        lm_path = self.config.input_path(self.config.language_model_file)

        # The decoder engine reports unreadable files as generic errors.
        for path, description in ((lexicon_path, "lexicon"), (lm_path, "language model")):
            try:
                open(path, "rb").close()
            except OSError as e:
                raise OpenFailure(path, description) from e

        with time_elapsed("create decoder"):
            try:
                return DecoderFactory(
                    tokens,
                    lexicon_path,
                    lm_path,
                    [] if transitions is None else transitions.tolist(),
                    SmearingMode.MAX,
                    self.config.silence_token,
                    self.config.repetition_labels,
                    blank_token=self.config.blank_token,
                    unk_word=self.config.unk_word,
                )
            except Exception as e:
                raise DeserializationError(f"failed to create decoder: {e}") from e

    def load(self) -> Resources:
        """Load every resource needed by the tasks.

        Returns:
            The complete, immutable set of shared resources.

        Raises:
            OpenFailure: If a required file can't be opened.
            DeserializationError: If a file's content doesn't match its schema.
        """
        feature_stage = self.load_feature_stage()
        acoustic_stage = self.load_acoustic_stage()
        model_bundle = ModelBundle.compose(feature_stage, acoustic_stage)

        tokens = self.load_tokens()
        if model_bundle.num_outputs != len(tokens):
            raise DeserializationError(
                f"acoustic model produces {model_bundle.num_outputs} outputs but "
                f"there are {len(tokens)} tokens"
            )

        decoder_options = self.load_decoder_options()

        transitions = self.load_transitions()
        if transitions is not None and transitions.size != len(tokens) ** 2:
            raise DeserializationError(
                f"expected {len(tokens) ** 2} transition values for "
                f"{len(tokens)} tokens, got {transitions.size}"
            )

        decoder_factory = self.create_decoder_factory(tokens, transitions)
        try:
            decoder_factory.validate(decoder_options)
        except ValueError as e:
            raise DeserializationError(str(e)) from e

        return Resources(
            model_bundle=model_bundle,
            decoder_factory=decoder_factory,
            decoder_options=decoder_options,
            tokens=tuple(tokens),
        )
