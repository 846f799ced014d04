"""Tests for the featureflow CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from featureflow.cli import main


@pytest.fixture(autouse=True)
def _quiet_logging():
    with patch("featureflow.cli._setup_logging"):
        yield


@pytest.fixture()
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _new(capsys: pytest.CaptureFixture[str], title: str = "Saved searches") -> str:
    assert main(["new", title]) == 0
    return capsys.readouterr().out.strip()


def test_version(capsys: object) -> None:
    """CLI --version prints version string."""
    with pytest.raises(SystemExit, match="0"):
        main(["--version"])


def test_help_default(capsys: object) -> None:
    """CLI with no args prints help and returns 0."""
    assert main([]) == 0


def test_init_calls_init_config(tmp_path: Path) -> None:
    with (
        patch(
            "featureflow.config.init_config",
            return_value=tmp_path / ".featureflow" / "featureflow.toml",
        ) as mock_init,
        patch("featureflow.cli.Path") as mock_path_cls,
    ):
        mock_path_cls.cwd.return_value = tmp_path
        result = main(["--init"])

    assert result == 0
    mock_init.assert_called_once_with(tmp_path)


def test_main_module_runnable() -> None:
    import runpy

    with (
        patch("featureflow.cli.main", return_value=0) as mock_main,
        pytest.raises(SystemExit, match="0"),
    ):
        runpy.run_module("featureflow", run_name="__main__")
    mock_main.assert_called_once()


class TestCommands:
    def test_new_creates_database(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        assert feature_id
        assert (project / ".featureflow").is_dir()

    def test_show(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        assert main(["show", feature_id]) == 0
        out = capsys.readouterr().out
        assert "Saved searches (planning)" in out
        assert "Intake" in out

    def test_show_unknown_feature(self, project: Path, capsys) -> None:
        assert main(["show", "ghost"]) == 1
        assert "ghost" in capsys.readouterr().err

    def test_status(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        assert main(["status", feature_id, "design_review"]) == 0
        assert capsys.readouterr().out.strip() == f"{feature_id}: design_review"

    def test_status_invalid_transition(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        assert main(["status", feature_id, "done"]) == 1
        assert "planning" in capsys.readouterr().err

    def test_status_unknown_value(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        assert main(["status", feature_id, "shipping"]) == 2

    def test_run_stops_at_gate(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        with patch("featureflow.runner.PipelineRunner") as mock_cls:
            mock_cls.return_value.run.return_value = MagicMock(
                feature=MagicMock(status=MagicMock(value="design_review")),
                stopped_reason=MagicMock(value="human_gate"),
                error=None,
            )
            assert main(["run", feature_id]) == 0
        mock_cls.return_value.run.assert_called_once_with(feature_id)
        assert capsys.readouterr().out.strip() == "design_review (human_gate)"

    def test_run_reports_error(self, project: Path, capsys) -> None:
        feature_id = _new(capsys)
        with patch("featureflow.runner.PipelineRunner") as mock_cls:
            mock_cls.return_value.run.return_value = MagicMock(
                feature=MagicMock(status=MagicMock(value="in_progress")),
                stopped_reason=MagicMock(value="error"),
                error="boom",
            )
            assert main(["run", feature_id]) == 1
        assert "boom" in capsys.readouterr().err

    def test_run_unknown_feature(self, project: Path, capsys) -> None:
        assert main(["run", "ghost"]) == 1

    def test_serve_uses_config_defaults(self, project: Path) -> None:
        app = MagicMock()
        with patch("featureflow.server.create_app", return_value=app):
            assert main(["serve", "--port", "9001"]) == 0
        app.run.assert_called_once_with(host="127.0.0.1", port=9001, threaded=True)
