"""Main entry point for the batchasr driver."""

import logging
import sys
from typing import List, NoReturn, Optional, Sequence

from .config import RunConfig, load_config
from .errors import SetupError
from .logging_setup import setup_logging
from .pool import TranscriptionTask, WorkerPool
from .report import RunReport
from .resources import ResourceLoader, Resources, time_elapsed
from .worker import audio_file_to_words_file

logger = logging.getLogger(__name__)

__all__ = ["main", "run", "transcribe_files"]

EXIT_OK = 0
EXIT_SETUP_FAILURE = 1
EXIT_TASK_FAILURES = 2


def make_tasks(config: RunConfig, input_files: List[str]) -> List[TranscriptionTask]:
    return [
        TranscriptionTask(
            input_path=config.input_path(input_file),
            output_path=config.output_path(input_file),
        )
        for input_file in input_files
    ]


def transcribe_files(
    config: RunConfig, resources: Resources, input_files: List[str]
) -> RunReport:
    """Transcribe every input file on a pool of worker threads.

    Blocks until all tasks have finished.

    Args:
        config: Run configuration.
        resources: Shared, already loaded resources.
        input_files: Audio file names as given by the user.

    Returns:
        Report with one outcome per input file.
    """
    tasks = make_tasks(config, input_files)

    model_bundle = resources.model_bundle
    decoder_factory = resources.decoder_factory
    decoder_options = resources.decoder_options
    n_tokens = resources.num_tokens

    def handle(task: TranscriptionTask) -> None:
        audio_file_to_words_file(
            task.input_path,
            task.output_path,
            model_bundle,
            decoder_factory,
            decoder_options,
            n_tokens,
        )

    with time_elapsed("converting audio input files to text"):
        with WorkerPool(config.max_num_threads, handle, total=len(tasks)) as pool:
            for task in tasks:
                pool.enqueue(task)

    return RunReport(outcomes=pool.outcomes)


def log_report(report: RunReport) -> None:
    logger.info(f"Transcribed {report.succeeded}/{report.total} files")
    for outcome in sorted(report.failures, key=lambda o: o.number):
        logger.error(f"Failed: {outcome.input_path}: {outcome.error}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one batch transcription.

    Args:
        argv: Command-line arguments (defaults to ``sys.argv[1:]``).

    Returns:
        Exit code (0 for success, 1 for setup failure, 2 if any file failed)
    """
    # Load configuration first
    try:
        config = load_config(argv)
    except (ValueError, OSError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return EXIT_SETUP_FAILURE

    setup_logging(config.log_level, config.log_file)

    # Everything shared is loaded before any worker thread exists
    try:
        input_files = config.resolve_input_files()
        logger.info(f"Will process {len(input_files)} files.")

        resources = ResourceLoader(config).load()

        config.output_files_base_path.mkdir(parents=True, exist_ok=True)
    except SetupError as e:
        logger.error(f"Setup failed: {e}")
        return EXIT_SETUP_FAILURE
    except OSError as e:
        logger.error(f"Cannot create output directory: {e}")
        return EXIT_SETUP_FAILURE

    report = transcribe_files(config, resources, input_files)
    log_report(report)

    if config.report_file is not None:
        try:
            report.write(config.report_file)
            logger.info(f"Run report written to {config.report_file}")
        except OSError as e:
            logger.error(f"Failed to write run report: {e}")

    return EXIT_OK if report.failed == 0 else EXIT_TASK_FAILURES


def run() -> NoReturn:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"batchasr failed with unhandled exception: {e}")
        sys.exit(1)
