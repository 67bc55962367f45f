"""Setup failure types for batchasr."""

from pathlib import Path
from typing import Union


class SetupError(Exception):
    """Fatal failure while preparing shared resources for a run."""


class OpenFailure(SetupError):
    """A required file could not be opened."""

    def __init__(self, path: Union[str, Path], description: str):
        self.path = Path(path)
        self.description = description
        super().__init__(f"failed to open {description} file={self.path} for reading")


class DeserializationError(SetupError):
    """A file was read but its content does not match the expected layout."""
