"""Tests for the fidelity-compare command."""

import json
from pathlib import Path

import pytest

from fidelity.cli import EXIT_CONVERGED, EXIT_INPUT_ERROR, EXIT_RUNNING, EXIT_STOPPED, main
from fidelity.report import ComparisonReport, load_state, load_trend

from conftest import save_rectangle_image


@pytest.fixture
def shifted_png(tmp_path: Path) -> Path:
    return save_rectangle_image(tmp_path / "shifted.png", rect=(170, 80, 100, 40))


class TestMain:
    """Tests for main()."""

    def test_identical_converges(self, design_png: Path, capsys) -> None:
        """Identical images exit with the converged code."""
        assert main([str(design_png), str(design_png)]) == EXIT_CONVERGED
        out = capsys.readouterr().out
        assert "Fidelity score: 100/100" in out
        assert "Status: converged" in out

    def test_needs_another_iteration(self, design_png: Path, shifted_png: Path, capsys) -> None:
        """Remaining differences exit with the running code."""
        assert main([str(design_png), str(shifted_png), "-q"]) == EXIT_RUNNING
        out = capsys.readouterr().out
        assert "Discrepancies" in out
        assert "adjust-position" in out

    def test_writes_outputs(self, tmp_path: Path, design_png: Path, shifted_png: Path) -> None:
        """Requested report, state, trend, heatmap and HTML files are written."""
        out_dir = tmp_path / "out"
        code = main(
            [
                str(design_png),
                str(shifted_png),
                "--output", str(out_dir / "report.json"),
                "--state", str(out_dir / "state.json"),
                "--trend", str(out_dir / "trend.jsonl"),
                "--html", str(out_dir / "report.html"),
                "--heatmap", str(out_dir / "diff.png"),
                "--quiet",
            ]
        )
        assert code == EXIT_RUNNING
        report = ComparisonReport.load(out_dir / "report.json")
        assert report.score.total < 70
        assert load_state(out_dir / "state.json").iteration == 1
        assert len(load_trend(out_dir / "trend.jsonl")) == 1
        assert (out_dir / "diff.png").exists()
        assert "diff.png" in (out_dir / "report.html").read_text(encoding="utf-8")

    def test_state_persists_until_escalation(
        self, tmp_path: Path, design_png: Path, shifted_png: Path
    ) -> None:
        """State file carries the loop across runs until it escalates."""
        state = tmp_path / "state.json"
        args = [str(design_png), str(shifted_png), "--state", str(state), "-q"]
        codes = [main(args) for _ in range(3)]
        assert codes == [EXIT_RUNNING, EXIT_RUNNING, EXIT_STOPPED]
        assert load_state(state).status.value == "escalated"

    def test_finished_loop_is_an_input_error(
        self, tmp_path: Path, design_png: Path, capsys
    ) -> None:
        """Running again on a finished loop is an input error."""
        state = tmp_path / "state.json"
        args = [str(design_png), str(design_png), "--state", str(state), "-q"]
        assert main(args) == EXIT_CONVERGED
        assert main(args) == EXIT_INPUT_ERROR
        assert "already finished" in capsys.readouterr().err

    def test_max_iterations_flag(self, design_png: Path, shifted_png: Path) -> None:
        """--max-iterations limits the budget."""
        code = main([str(design_png), str(shifted_png), "--max-iterations", "1", "-q"])
        assert code == EXIT_STOPPED

    def test_convergence_flag(self, design_png: Path, shifted_png: Path) -> None:
        """--convergence lowers the convergence threshold."""
        code = main([str(design_png), str(shifted_png), "--convergence", "30", "-q"])
        assert code == EXIT_CONVERGED

    def test_missing_image(self, tmp_path: Path, design_png: Path, capsys) -> None:
        """Missing image is an input error."""
        assert main([str(design_png), str(tmp_path / "nope.png")]) == EXIT_INPUT_ERROR
        assert "Error:" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path: Path, design_png: Path, capsys) -> None:
        """Invalid configuration is an input error."""
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"weights": {"ssim": 99}}))
        code = main([str(design_png), str(design_png), "--config", str(config)])
        assert code == EXIT_INPUT_ERROR
        assert "Invalid configuration" in capsys.readouterr().err

    def test_invalid_regions_file(self, tmp_path: Path, design_png: Path) -> None:
        """Malformed regions file is an input error."""
        regions = tmp_path / "regions.json"
        regions.write_text('[{"x": 1}]')
        code = main([str(design_png), str(design_png), "--regions", str(regions)])
        assert code == EXIT_INPUT_ERROR

    def test_regions_and_layout_files(self, tmp_path: Path, design_png: Path) -> None:
        """Regions and layout files are used for the comparison."""
        regions = tmp_path / "regions.json"
        regions.write_text('[{"label": "button", "x": 150, "y": 80, "width": 100, "height": 40}]')
        layout = tmp_path / "layout.json"
        layout.write_text('{"samples": [{"id": "fill", "x": 200, "y": 100}]}')
        output = tmp_path / "report.json"
        code = main(
            [
                str(design_png),
                str(design_png),
                "--regions", str(regions),
                "--layout", str(layout),
                "--output", str(output),
                "-q",
            ]
        )
        assert code == EXIT_CONVERGED
        report = ComparisonReport.load(output)
        assert set(report.metrics.regions) == {"button"}
        assert "fill" in report.metrics.color_delta_e
