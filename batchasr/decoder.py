"""Lexicon-constrained beam-search decoding on top of flashlight-text."""

import enum
import logging
from pathlib import Path
from typing import List, Sequence, Union

import numpy as np
from flashlight.lib.text.decoder import (
    CriterionType,
    KenLM,
    LexiconDecoder,
    LexiconDecoderOptions,
    SmearingMode,
    Trie,
)
from flashlight.lib.text.dictionary import Dictionary, create_word_dict, load_words
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class CriterionKind(enum.IntEnum):
    """Training criterion of the acoustic model, as serialized in options files."""

    ASG = 0
    CTC = 1
    S2S = 2


class DecoderOptions(BaseModel):
    """Beam-search settings shared by every decoder of a run."""

    model_config = ConfigDict(frozen=True, strict=True, populate_by_name=True)

    beam_size: int = Field(alias="beamSize", ge=1)
    beam_size_token: int = Field(alias="beamSizeToken", ge=1)
    beam_threshold: float = Field(alias="beamThreshold")
    lm_weight: float = Field(alias="lmWeight")
    word_score: float = Field(alias="wordScore")
    unk_score: float = Field(alias="unkScore")
    sil_score: float = Field(alias="silScore")
    log_add: bool = Field(alias="logAdd")
    criterion_type: CriterionKind = Field(alias="criterionType")

    @field_validator("criterion_type", mode="before")
    @classmethod
    def parse_criterion_type(cls, v):
        if isinstance(v, CriterionKind):
            kind = v
        elif isinstance(v, int) and not isinstance(v, bool):
            try:
                kind = CriterionKind(v)
            except ValueError:
                raise ValueError(f"Unknown criterion type code: {v}")
        elif isinstance(v, str):
            try:
                kind = CriterionKind[v.upper()]
            except KeyError:
                raise ValueError(f"Unknown criterion type name: {v}")
        else:
            raise ValueError(f"Criterion type must be an integer or a name, got {v!r}")

        if kind == CriterionKind.S2S:
            raise ValueError("The lexicon decoder does not support the S2S criterion")
        return kind

    def to_lexicon_options(self) -> LexiconDecoderOptions:
        return LexiconDecoderOptions(
            beam_size=self.beam_size,
            beam_size_token=self.beam_size_token,
            beam_threshold=self.beam_threshold,
            lm_weight=self.lm_weight,
            word_score=self.word_score,
            unk_score=self.unk_score,
            sil_score=self.sil_score,
            log_add=self.log_add,
            criterion_type=getattr(CriterionType, self.criterion_type.name),
        )


def pack_repetition_labels(
    token_indices: Sequence[int], label_indices: Sequence[int]
) -> List[int]:
    """Replace runs of a repeated token with repetition-label tokens.

    Args:
        token_indices: Spelling as token indices.
        label_indices: Index of the label token for 1..len(label_indices) repeats.

    Returns:
        Packed spelling, e.g. ``a a a b`` with two labels becomes ``a <2> b``.
    """
    max_repetitions = len(label_indices)
    if not token_indices or max_repetitions == 0:
        return list(token_indices)

    packed: List[int] = []
    previous = None
    repetitions = 0
    for index in token_indices:
        if index == previous and repetitions < max_repetitions:
            repetitions += 1
            continue
        if repetitions > 0:
            packed.append(label_indices[repetitions - 1])
            repetitions = 0
        packed.append(index)
        previous = index
    if repetitions > 0:
        packed.append(label_indices[repetitions - 1])
    return packed


class LexiconWordDecoder:
    """Single-use decoder turning one file's emissions into words.

    Instances are not thread-safe; create one per task.
    """

    def __init__(self, decoder: LexiconDecoder, word_dict: Dictionary):
        self._decoder = decoder
        self._word_dict = word_dict

    def decode(self, emissions: np.ndarray) -> List[str]:
        """Return the words of the best hypothesis.

        Args:
            emissions: (frames, tokens) acoustic scores.
        """
        emissions = np.ascontiguousarray(emissions, dtype=np.float32)
        frames, num_tokens = emissions.shape
        results = self._decoder.decode(emissions.ctypes.data, frames, num_tokens)
        if not results:
            return []
        best = results[0]
        return [self._word_dict.get_entry(index) for index in best.words if index >= 0]


class DecoderFactory:
    """Shared, read-only state for building lexicon decoders.

    Holds the token and word dictionaries, the language model and the smeared
    lexicon trie. Nothing here changes after construction, so one factory can
    serve every worker thread.
    """

    def __init__(
        self,
        tokens: Sequence[str],
        lexicon_path: Union[str, Path],
        language_model_path: Union[str, Path],
        transitions: Sequence[float],
        smearing_mode: SmearingMode,
        silence_token: str,
        repetition_labels: int = 0,
        blank_token: str = "#",
        unk_word: str = "<unk>",
    ):
        """Build the lexicon trie and load the language model.

        Raises:
            ValueError: If the silence token, a repetition label or a spelling
                token is not among the tokens.
        """
        self._tokens = tuple(tokens)
        self._transitions = tuple(float(x) for x in transitions)

        self._token_dict = Dictionary(list(self._tokens))
        if not self._token_dict.contains(silence_token):
            raise ValueError(f"Silence token '{silence_token}' is not in the tokens")
        self._silence_index = self._token_dict.get_index(silence_token)
        self._blank_index = (
            self._token_dict.get_index(blank_token)
            if self._token_dict.contains(blank_token)
            else -1
        )

        label_indices = []
        for repeats in range(1, repetition_labels + 1):
            label = str(repeats)
            if not self._token_dict.contains(label):
                raise ValueError(f"Repetition label '{label}' is not in the tokens")
            label_indices.append(self._token_dict.get_index(label))

        lexicon = load_words(str(lexicon_path))
        self._word_dict = create_word_dict(lexicon)
        if not self._word_dict.contains(unk_word):
            self._word_dict.add_entry(unk_word)
        self._unk_index = self._word_dict.get_index(unk_word)

        self._language_model = KenLM(str(language_model_path), self._word_dict)

        self._trie = Trie(len(self._tokens), self._silence_index)
        start_state = self._language_model.start(False)
        for word, spellings in lexicon.items():
            word_index = self._word_dict.get_index(word)
            _, score = self._language_model.score(start_state, word_index)
            for spelling in spellings:
                missing = [t for t in spelling if not self._token_dict.contains(t)]
                if missing:
                    raise ValueError(
                        f"Spelling of '{word}' uses unknown tokens: {missing}"
                    )
                indices = [self._token_dict.get_index(t) for t in spelling]
                self._trie.insert(
                    pack_repetition_labels(indices, label_indices), word_index, score
                )
        self._trie.smear(smearing_mode)

        logger.info(
            f"Decoder factory ready: {len(self._tokens)} tokens, "
            f"{len(lexicon)} lexicon words, {len(self._transitions)} transitions"
        )

    @property
    def num_tokens(self) -> int:
        return len(self._tokens)

    def validate(self, options: DecoderOptions) -> None:
        """Check that decoders can be built with the given options.

        Raises:
            ValueError: If the options don't fit the loaded tokens/transitions.
        """
        if options.criterion_type == CriterionKind.CTC and self._blank_index < 0:
            raise ValueError("CTC decoding requires a blank token in the tokens")
        if options.criterion_type == CriterionKind.ASG and not self._transitions:
            logger.warning("ASG decoding without transitions; using zero transitions")

    def create(self, options: DecoderOptions) -> LexiconWordDecoder:
        """Construct a fresh decoder for a single task."""
        transitions = list(self._transitions)
        if options.criterion_type == CriterionKind.ASG and not transitions:
            transitions = [0.0] * (self.num_tokens * self.num_tokens)

        decoder = LexiconDecoder(
            options.to_lexicon_options(),
            self._trie,
            self._language_model,
            self._silence_index,
            self._blank_index,
            self._unk_index,
            transitions,
            False,
        )
        return LexiconWordDecoder(decoder, self._word_dict)
