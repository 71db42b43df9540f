"""Tests for Snapshot and the file-backed context provider."""

import dataclasses

import pytest

from agentbridge.context import (
    EMPTY_SNAPSHOT,
    MAX_LOG_CHARS,
    MAX_SCRIPT_CHARS,
    FileContext,
    Snapshot,
)


class TestSnapshot:
    def test_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            EMPTY_SNAPSHOT.dataset = "x"

    def test_defaults_empty(self):
        assert all(v is None for v in dataclasses.asdict(Snapshot()).values())


class TestFileContext:
    def test_reads_each_file(self, tmp_path):
        files = {}
        for name in ("dataset", "error", "script", "sel", "log", "model"):
            files[name] = tmp_path / name
            files[name].write_text(f"{name} text\n")

        snap = FileContext(
            dataset=str(files["dataset"]),
            last_error=str(files["error"]),
            script=str(files["script"]),
            selection=str(files["sel"]),
            command_log=str(files["log"]),
            model_summary=str(files["model"]),
        )()
        assert snap.dataset == "dataset text\n"
        assert snap.last_error == "error text\n"
        assert snap.script_full == "script text\n"
        assert snap.script_selection == "sel text\n"
        assert snap.command_log == "log text\n"
        assert snap.last_model_simple == "model text\n"
        assert snap.last_model_full == "model text\n"

    def test_separate_full_summary(self, tmp_path):
        (tmp_path / "s").write_text("short")
        (tmp_path / "f").write_text("long")
        snap = FileContext(
            model_summary=str(tmp_path / "s"), model_summary_full=str(tmp_path / "f")
        )()
        assert snap.last_model_simple == "short"
        assert snap.last_model_full == "long"

    def test_missing_files_are_empty(self, tmp_path):
        snap = FileContext(dataset=str(tmp_path / "nope"))()
        assert snap == Snapshot()

    def test_caps(self, tmp_path):
        (tmp_path / "script").write_text("s" * (MAX_SCRIPT_CHARS + 10))
        (tmp_path / "log").write_text("l" * (MAX_LOG_CHARS + 10))
        snap = FileContext(script=str(tmp_path / "script"), command_log=str(tmp_path / "log"))()
        assert len(snap.script_full) == MAX_SCRIPT_CHARS
        assert len(snap.command_log) == MAX_LOG_CHARS

    def test_rereads_on_every_call(self, tmp_path):
        path = tmp_path / "err"
        path.write_text("first")
        ctx = FileContext(last_error=str(path))
        assert ctx().last_error == "first"
        path.write_text("second")
        assert ctx().last_error == "second"
