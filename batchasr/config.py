"""Configuration handling for the batchasr driver."""

import argparse
import re
import tomllib
from pathlib import Path
from typing import List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import OpenFailure

INPUT_LIST_SEPARATORS = re.compile(r"[,;]")
TRANSCRIPT_SUFFIX = ".txt"


def full_path(file_name: Union[str, Path], base_path: Path) -> Path:
    """Prefix a file name with a base path unless it is already absolute."""
    return base_path / file_name


def split_input_audio_files(value: str) -> List[str]:
    """Split an inline file list on commas or semicolons.

    Empty tokens (from consecutive or trailing separators) are skipped. Other
    tokens are kept verbatim, including repeats.
    """
    return [token for token in INPUT_LIST_SEPARATORS.split(value) if token]


def split_lines(text: str) -> List[str]:
    """Split text on ``\\n`` only, dropping a trailing ``\\r`` from each line.

    Other Unicode line boundaries (form feed, ``\\u2028``, ...) stay part of
    the line. A final newline doesn't produce an extra empty line.
    """
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def read_file_of_paths(path: Path) -> List[str]:
    """Read one audio file name per line, skipping empty lines.

    Raises:
        OpenFailure: If the file can't be opened.
    """
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            lines = split_lines(f.read())
    except OSError as e:
        raise OpenFailure(path, "input audio file of paths") from e

    return [line for line in lines if line]


class RunConfig(BaseModel):
    """Immutable configuration for one batch run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_num_threads: int = Field(
        default=1, ge=1, description="Maximum number of worker threads to use for ASR."
    )
    input_files_base_path: Path = Field(
        default=Path("."),
        description="Prefix added to input files unless the file is a full path.",
    )
    output_files_base_path: Path = Field(
        default=Path("."),
        description="Transcripts are saved as <output base>/<input file name>.txt.",
    )
    feature_module_file: str = Field(
        default="feature_extractor.bin",
        description="Archive containing feature extraction parameters.",
    )
    acoustic_module_file: str = Field(
        default="acoustic_model.bin",
        description="Archive containing acoustic model parameters.",
    )
    transitions_file: str = Field(
        default="",
        description="Binary file with ASG criterion transition parameters (optional).",
    )
    tokens_file: str = Field(default="tokens.txt", description="Text file of tokens.")
    lexicon_file: str = Field(
        default="lexicon.txt", description="Text file containing the lexicon."
    )
    language_model_file: str = Field(
        default="language_model.bin", description="KenLM language model file."
    )
    silence_token: str = Field(default="_", description="Token denoting silence.")
    blank_token: str = Field(
        default="#", description="Token denoting the CTC blank, if the tokens have one."
    )
    unk_word: str = Field(default="<unk>", description="Word used for unknown words.")
    repetition_labels: int = Field(
        default=0, ge=0, description="Number of repetition labels used in spellings."
    )
    input_audio_files: str = Field(
        default="",
        description="Comma separated list of 16kHz audio files to transcribe.",
    )
    input_audio_file_of_paths: Optional[Path] = Field(
        default=None,
        description="Text file with one audio file name or full path per line.",
    )
    decoder_options_file: str = Field(
        default="decoder_options.json",
        description="JSON file containing decoder options.",
    )
    report_file: Optional[Path] = Field(
        default=None, description="Optional path for a JSON report of the run."
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional log file path."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    def input_path(self, file_name: Union[str, Path]) -> Path:
        return full_path(file_name, self.input_files_base_path)

    def output_path(self, file_name: Union[str, Path]) -> Path:
        """Transcript path for an input file: its base name plus ``.txt``."""
        return full_path(
            Path(file_name).name + TRANSCRIPT_SUFFIX, self.output_files_base_path
        )

    @property
    def transitions_path(self) -> Optional[Path]:
        if not self.transitions_file:
            return None
        return self.input_path(self.transitions_file)

    def resolve_input_files(self) -> List[str]:
        """Collect audio file names from the inline list and the file of paths.

        Returns:
            Inline entries first, followed by entries from the file of paths.

        Raises:
            OpenFailure: If the file of paths can't be read.
        """
        input_files = split_input_audio_files(self.input_audio_files)
        if self.input_audio_file_of_paths is not None:
            input_files.extend(read_file_of_paths(self.input_audio_file_of_paths))
        return input_files


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser.

    Every option defaults to None so that only flags given explicitly
    override values from a config file.
    """
    parser = argparse.ArgumentParser(
        prog="batchasr",
        description=(
            "Transcribe audio files to text with a lexicon decoder, "
            "using a pool of worker threads."
        ),
    )
    parser.add_argument(
        "--config", type=Path, help="TOML file with base configuration values"
    )

    fields = RunConfig.model_fields
    for name, field in fields.items():
        flag = "--" + name.replace("_", "-")
        kwargs = {"dest": name, "default": None, "help": field.description}
        if field.annotation is int:
            kwargs["type"] = int
        parser.add_argument(flag, **kwargs)

    return parser


def load_config_file(path: Path) -> dict:
    """Read raw configuration values from a TOML file.

    Raises:
        ValueError: If the file is not valid TOML.
        OSError: If the file can't be read.
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e


def load_config(argv: Optional[Sequence[str]] = None) -> RunConfig:
    """Load and validate configuration from the command line.

    Values from ``--config`` form the base; flags given on the command line
    override them.

    Args:
        argv: Command-line arguments (defaults to ``sys.argv[1:]``).

    Returns:
        Validated RunConfig instance.

    Raises:
        ValueError: If the configuration is invalid.
        OSError: If the config file exists but can't be read.
    """
    args = build_arg_parser().parse_args(argv)

    config_data = {}
    if args.config is not None:
        config_data.update(load_config_file(args.config))

    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "config" and value is not None
    }
    config_data.update(overrides)

    try:
        return RunConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
