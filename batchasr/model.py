"""Feature extraction and acoustic scoring stages, composed into one model."""

import logging
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np
from faster_whisper.feature_extractor import FeatureExtractor

from .errors import DeserializationError

logger = logging.getLogger(__name__)

FEATURE_KEYS = ("feature_size", "sampling_rate", "hop_length", "n_fft")


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float32, copy=True)
    array.flags.writeable = False
    return array


class FeatureExtractionStage:
    """Turns raw audio samples into log-mel frames.

    Output shape is (frames, feature_size).
    """

    def __init__(
        self,
        feature_size: int = 80,
        sampling_rate: int = 16000,
        hop_length: int = 160,
        n_fft: int = 400,
    ):
        self.feature_size = feature_size
        self.sampling_rate = sampling_rate
        self.hop_length = hop_length
        self.n_fft = n_fft
        self._extractor = FeatureExtractor(
            feature_size=feature_size,
            sampling_rate=sampling_rate,
            hop_length=hop_length,
            n_fft=n_fft,
        )

    @classmethod
    def from_parameters(cls, params: Mapping[str, np.ndarray]) -> "FeatureExtractionStage":
        """Build the stage from a deserialized parameter archive.

        Raises:
            DeserializationError: If a parameter is missing or not a positive integer.
        """
        values: Dict[str, int] = {}
        for key in FEATURE_KEYS:
            if key not in params:
                raise DeserializationError(f"feature module is missing '{key}'")
            value = np.asarray(params[key])
            if value.ndim != 0 or not np.issubdtype(value.dtype, np.integer):
                raise DeserializationError(
                    f"feature module entry '{key}' must be an integer scalar"
                )
            if int(value) <= 0:
                raise DeserializationError(
                    f"feature module entry '{key}' must be positive, got {int(value)}"
                )
            values[key] = int(value)
        return cls(**values)

    def __call__(self, audio: np.ndarray) -> np.ndarray:
        features = self._extractor(audio.astype(np.float32, copy=False))
        return np.ascontiguousarray(features.T, dtype=np.float32)


class AcousticScoringStage:
    """Feed-forward network scoring feature frames into token log-probabilities."""

    def __init__(self, layers: Sequence[Tuple[np.ndarray, np.ndarray]]):
        if not layers:
            raise DeserializationError("acoustic module has no layers")

        checked = []
        expected_in = None
        for i, (weight, bias) in enumerate(layers):
            if not (
                np.issubdtype(weight.dtype, np.number)
                and np.issubdtype(bias.dtype, np.number)
            ):
                raise DeserializationError(f"acoustic layer {i} is not numeric")
            if weight.ndim != 2:
                raise DeserializationError(
                    f"acoustic layer {i} weight must be 2-D, got shape {weight.shape}"
                )
            if bias.shape != (weight.shape[1],):
                raise DeserializationError(
                    f"acoustic layer {i} bias shape {bias.shape} does not match "
                    f"weight shape {weight.shape}"
                )
            if expected_in is not None and weight.shape[0] != expected_in:
                raise DeserializationError(
                    f"acoustic layer {i} expects {weight.shape[0]} inputs but "
                    f"previous layer produces {expected_in}"
                )
            expected_in = weight.shape[1]
            checked.append((_read_only(weight), _read_only(bias)))

        self._layers: Tuple[Tuple[np.ndarray, np.ndarray], ...] = tuple(checked)

    @classmethod
    def from_parameters(cls, params: Mapping[str, np.ndarray]) -> "AcousticScoringStage":
        """Build the stage from ``weight_i``/``bias_i`` archive entries.

        Raises:
            DeserializationError: If the entries are missing or inconsistent.
        """
        layers = []
        i = 0
        while f"weight_{i}" in params:
            if f"bias_{i}" not in params:
                raise DeserializationError(f"acoustic module is missing 'bias_{i}'")
            layers.append(
                (np.asarray(params[f"weight_{i}"]), np.asarray(params[f"bias_{i}"]))
            )
            i += 1

        unexpected = set(params) - {f"weight_{j}" for j in range(i)} - {
            f"bias_{j}" for j in range(i)
        }
        if unexpected:
            raise DeserializationError(
                f"acoustic module has unexpected entries: {sorted(unexpected)}"
            )
        return cls(layers)

    @property
    def num_inputs(self) -> int:
        return self._layers[0][0].shape[0]

    @property
    def num_outputs(self) -> int:
        return self._layers[-1][0].shape[1]

    def __call__(self, features: np.ndarray) -> np.ndarray:
        hidden = features
        last = len(self._layers) - 1
        for i, (weight, bias) in enumerate(self._layers):
            hidden = hidden @ weight + bias
            if i != last:
                hidden = np.maximum(hidden, 0.0)

        # log-softmax over tokens
        shifted = hidden - hidden.max(axis=1, keepdims=True)
        log_norm = np.log(np.exp(shifted).sum(axis=1, keepdims=True))
        return (shifted - log_norm).astype(np.float32)


class ModelBundle:
    """Ordered inference pipeline: feature extraction, then acoustic scoring.

    The bundle holds no per-call state, so a single instance can be invoked
    from several threads at once.
    """

    def __init__(
        self,
        feature_stage: FeatureExtractionStage,
        acoustic_stage: AcousticScoringStage,
    ):
        self._stages = (feature_stage, acoustic_stage)

    @classmethod
    def compose(
        cls,
        feature_stage: FeatureExtractionStage,
        acoustic_stage: AcousticScoringStage,
    ) -> "ModelBundle":
        """Chain the two stages, checking that their widths agree.

        Raises:
            DeserializationError: If the acoustic model input width differs
                from the feature size.
        """
        if acoustic_stage.num_inputs != feature_stage.feature_size:
            raise DeserializationError(
                f"acoustic model expects {acoustic_stage.num_inputs} features but "
                f"feature module produces {feature_stage.feature_size}"
            )
        logger.debug(
            f"Composed model bundle ({feature_stage.feature_size} features -> "
            f"{acoustic_stage.num_outputs} outputs)"
        )
        return cls(feature_stage, acoustic_stage)

    @property
    def stages(self) -> Tuple[FeatureExtractionStage, AcousticScoringStage]:
        return self._stages

    @property
    def sampling_rate(self) -> int:
        return self._stages[0].sampling_rate

    @property
    def num_outputs(self) -> int:
        return self._stages[1].num_outputs

    def __call__(self, audio: np.ndarray) -> np.ndarray:
        """Score audio samples into (frames, num_outputs) log-probabilities."""
        output = audio
        for stage in self._stages:
            output = stage(output)
        return output
