"""End-to-end tests for the batchasr driver."""

import json
from unittest.mock import patch

import pytest

from batchasr.main import EXIT_OK, EXIT_SETUP_FAILURE, EXIT_TASK_FAILURES, main, run

from conftest import DECODER_OPTIONS, synthetic_audio


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep main() from replacing pytest's log handlers."""
    with patch("batchasr.main.setup_logging") as mock_setup:
        yield mock_setup


@pytest.fixture
def mock_load_audio():
    def load(path, sampling_rate=16000):
        return synthetic_audio(path, sampling_rate)

    with patch("batchasr.worker.load_audio", side_effect=load) as mock_load:
        yield mock_load


@pytest.fixture
def audio_files(tmp_path):
    """Ten audio files; contents come from mock_load_audio."""
    audio_dir = tmp_path / "audio"
    audio_dir.mkdir()
    paths = []
    for i in range(10):
        path = audio_dir / f"input{i}.wav"
        path.write_bytes(b"")
        paths.append(path)
    return paths


def base_args(model_dir, output_dir, audio_files, threads=1):
    return [
        "--input-files-base-path",
        str(model_dir),
        "--output-files-base-path",
        str(output_dir),
        "--input-audio-files",
        ",".join(str(p) for p in audio_files),
        "--max-num-threads",
        str(threads),
    ]


def read_outputs(output_dir):
    return {
        path.name: path.read_text(encoding="utf-8")
        for path in sorted(output_dir.iterdir())
    }


@pytest.mark.parametrize("threads", [1, 4, 8])
def test_main_writes_one_transcript_per_file(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory, threads
):
    """Test each input produces <basename>.txt in the output directory."""
    output_dir = tmp_path / "out"

    exit_code = main(base_args(model_dir, output_dir, audio_files, threads))

    assert exit_code == EXIT_OK
    assert sorted(p.name for p in output_dir.iterdir()) == sorted(
        f"{p.name}.txt" for p in audio_files
    )
    (factory,) = fake_decoder_factory.instances
    assert factory.created == len(audio_files)


def test_transcripts_do_not_depend_on_thread_count(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory
):
    """Test one thread and eight threads produce identical transcripts."""
    single = tmp_path / "single"
    multi = tmp_path / "multi"

    assert main(base_args(model_dir, single, audio_files, 1)) == EXIT_OK
    assert main(base_args(model_dir, multi, audio_files, 8)) == EXIT_OK

    single_outputs = read_outputs(single)
    assert len(single_outputs) == len(audio_files)
    assert single_outputs == read_outputs(multi)


@pytest.mark.parametrize("threads", [1, 8])
def test_report_progress_numbers(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory, threads
):
    """Test the run report has every progress number from 1 to N once."""
    report_file = tmp_path / "report.json"
    args = base_args(model_dir, tmp_path / "out", audio_files, threads)

    assert main(args + ["--report-file", str(report_file)]) == EXIT_OK

    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["total"] == len(audio_files)
    assert report["failed"] == 0
    numbers = [outcome["number"] for outcome in report["outcomes"]]
    assert numbers == list(range(1, len(audio_files) + 1))


def test_invalid_decoder_options_abort_run(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory
):
    """Test bad decoder options stop the run before any audio is read."""
    data = dict(DECODER_OPTIONS, logAdd="yes")
    (model_dir / "decoder_options.json").write_text(json.dumps(data), encoding="utf-8")
    output_dir = tmp_path / "out"

    with patch("batchasr.main.WorkerPool") as mock_pool:
        exit_code = main(base_args(model_dir, output_dir, audio_files, 4))

    assert exit_code == EXIT_SETUP_FAILURE
    mock_pool.assert_not_called()
    mock_load_audio.assert_not_called()
    assert not output_dir.exists() or not any(output_dir.iterdir())


def test_missing_decoder_option_field_aborts_run(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory
):
    """Test a missing decoder option field stops the run with no outputs."""
    data = {k: v for k, v in DECODER_OPTIONS.items() if k != "beamSize"}
    (model_dir / "decoder_options.json").write_text(json.dumps(data), encoding="utf-8")
    output_dir = tmp_path / "out"

    exit_code = main(base_args(model_dir, output_dir, audio_files, 2))

    assert exit_code == EXIT_SETUP_FAILURE
    mock_load_audio.assert_not_called()
    assert not output_dir.exists() or not any(output_dir.iterdir())


def test_unreadable_acoustic_model_aborts_before_pool(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory
):
    """Test a missing acoustic model stops the run before the pool exists."""
    (model_dir / "acoustic_model.bin").unlink()

    with patch("batchasr.main.WorkerPool") as mock_pool:
        exit_code = main(base_args(model_dir, tmp_path / "out", audio_files, 4))

    assert exit_code == EXIT_SETUP_FAILURE
    mock_pool.assert_not_called()
    assert fake_decoder_factory.instances == []


def test_failing_file_does_not_stop_others(
    tmp_path, model_dir, audio_files, fake_decoder_factory
):
    """Test one undecodable file fails alone while the rest are transcribed."""
    bad = audio_files[3]

    def load(path, sampling_rate=16000):
        if str(path) == str(bad):
            raise RuntimeError("invalid data found when processing input")
        return synthetic_audio(path, sampling_rate)

    output_dir = tmp_path / "out"
    report_file = tmp_path / "report.json"
    args = base_args(model_dir, output_dir, audio_files, 4)

    with patch("batchasr.worker.load_audio", side_effect=load):
        exit_code = main(args + ["--report-file", str(report_file)])

    assert exit_code == EXIT_TASK_FAILURES
    written = {p.name for p in output_dir.iterdir()}
    assert written == {f"{p.name}.txt" for p in audio_files if p != bad}

    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["succeeded"] == len(audio_files) - 1
    (failure,) = [o for o in report["outcomes"] if o["state"] == "Failed"]
    assert failure["input_path"] == str(bad)
    assert "invalid data" in failure["error"]


def test_system_exit_in_task_is_a_failure(
    tmp_path, model_dir, audio_files, fake_decoder_factory
):
    """Test a task raising SystemExit is reported and fails the run."""
    bad = audio_files[5]

    def load(path, sampling_rate=16000):
        if str(path) == str(bad):
            raise SystemExit(3)
        return synthetic_audio(path, sampling_rate)

    report_file = tmp_path / "report.json"
    args = base_args(model_dir, tmp_path / "out", audio_files, 2)

    with patch("batchasr.worker.load_audio", side_effect=load):
        exit_code = main(args + ["--report-file", str(report_file)])

    assert exit_code == EXIT_TASK_FAILURES
    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["total"] == len(audio_files)
    assert report["failed"] == 1
    (failure,) = [o for o in report["outcomes"] if o["state"] == "Failed"]
    assert failure["input_path"] == str(bad)


def test_inline_and_file_of_paths_are_merged(
    tmp_path, model_dir, audio_files, mock_load_audio, fake_decoder_factory
):
    """Test both input sources feed the task set, duplicates included."""
    paths_file = tmp_path / "inputs.txt"
    paths_file.write_text(
        f"{audio_files[2]}\n\n{audio_files[3]}\n", encoding="utf-8"
    )
    inline = f"{audio_files[0]},,{audio_files[1]};{audio_files[0]}"
    output_dir = tmp_path / "out"
    report_file = tmp_path / "report.json"

    exit_code = main(
        [
            "--input-files-base-path",
            str(model_dir),
            "--output-files-base-path",
            str(output_dir),
            "--input-audio-files",
            inline,
            "--input-audio-file-of-paths",
            str(paths_file),
            "--max-num-threads",
            "2",
            "--report-file",
            str(report_file),
        ]
    )

    assert exit_code == EXIT_OK
    assert sorted(p.name for p in output_dir.iterdir()) == sorted(
        f"{p.name}.txt" for p in audio_files[:4]
    )
    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["total"] == 5


def test_relative_audio_names_use_input_base_path(
    tmp_path, model_dir, mock_load_audio, fake_decoder_factory
):
    """Test relative audio file names are resolved against the input base path."""
    output_dir = tmp_path / "out"

    exit_code = main(
        [
            "--input-files-base-path",
            str(model_dir),
            "--output-files-base-path",
            str(output_dir),
            "--input-audio-files",
            "sub/clip.wav",
        ]
    )

    assert exit_code == EXIT_OK
    assert mock_load_audio.call_args.args[0] == model_dir / "sub" / "clip.wav"
    assert (output_dir / "clip.wav.txt").exists()


def test_missing_file_of_paths_aborts_run(tmp_path, model_dir, fake_decoder_factory):
    """Test an unreadable file of paths is a setup failure."""
    with patch("batchasr.main.ResourceLoader") as mock_loader:
        exit_code = main(
            [
                "--input-files-base-path",
                str(model_dir),
                "--input-audio-file-of-paths",
                str(tmp_path / "missing.txt"),
            ]
        )

    assert exit_code == EXIT_SETUP_FAILURE
    mock_loader.assert_not_called()


def test_no_input_files(tmp_path, model_dir, fake_decoder_factory):
    """Test a run without inputs succeeds and writes nothing."""
    output_dir = tmp_path / "out"

    exit_code = main(
        [
            "--input-files-base-path",
            str(model_dir),
            "--output-files-base-path",
            str(output_dir),
        ]
    )

    assert exit_code == EXIT_OK
    assert list(output_dir.iterdir()) == []


def test_invalid_configuration(capsys):
    """Test configuration errors are reported without running anything."""
    with patch("batchasr.main.ResourceLoader") as mock_loader:
        exit_code = main(["--max-num-threads", "0"])

    assert exit_code == EXIT_SETUP_FAILURE
    assert "Error loading configuration" in capsys.readouterr().err
    mock_loader.assert_not_called()


def test_logging_configured_from_config(tmp_path, model_dir, no_logging_setup):
    """Test logging is set up with the configured level and file."""
    log_file = tmp_path / "logs" / "run.log"

    with patch("batchasr.main.ResourceLoader"), patch(
        "batchasr.main.transcribe_files"
    ) as mock_transcribe:
        mock_transcribe.return_value.failed = 0
        main(["--log-level", "debug", "--log-file", str(log_file)])

    no_logging_setup.assert_called_once_with("DEBUG", log_file)


@pytest.mark.parametrize("code", [EXIT_OK, EXIT_TASK_FAILURES])
def test_run_exits_with_main_code(code):
    """Test the console entry point exits with main's return code."""
    with patch("batchasr.main.main", return_value=code):
        with pytest.raises(SystemExit) as exc_info:
            run()

    assert exc_info.value.code == code


def test_run_handles_unexpected_error():
    """Test unexpected exceptions exit with status 1."""
    with patch("batchasr.main.main", side_effect=RuntimeError("boom")):
        with pytest.raises(SystemExit) as exc_info:
            run()

    assert exc_info.value.code == 1
