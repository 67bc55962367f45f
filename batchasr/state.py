"""Lifecycle states of a transcription task."""

from enum import Enum


class TaskState(str, Enum):
    """Possible states for a task: Queued -> Running -> Completed or Failed."""

    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
