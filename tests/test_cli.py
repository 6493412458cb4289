"""
Tests for the command-line interface.
"""

import json

import pandas as pd
import pytest
import yaml
from click.testing import CliRunner

from precise_asv.cli import main


def invoke(*args):
    runner = CliRunner()
    return runner.invoke(main, ["--log-level", "CRITICAL", *args])


class TestCLI:
    """Test CLI commands end to end."""

    def test_help(self):
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("smoke", "run", "fit-errors", "simulate"):
            assert command in result.output

    @pytest.mark.slow
    def test_smoke(self, temp_dir):
        out_dir = temp_dir / "smoke"
        result = invoke("--seed", "3", "smoke", "--out-dir", str(out_dir), "--depth", "120")
        assert result.exit_code == 0, result.output

        payload = json.loads(result.stdout)
        assert payload["stage"] == "smoke"
        assert payload["seed"] == 3
        assert payload["summary"]["failed_samples"] == []
        for key in ("seqtab", "seqtab_nochim", "chimeras", "track", "config", "run_context"):
            assert (out_dir / payload["artifacts"][key].split("/")[-1]).exists()

        context = json.loads((out_dir / "run_context.json").read_text())
        assert context["seed"] == 3
        assert len(context["config_hash"]) == 16

    def test_simulate(self, temp_dir):
        result = invoke("simulate", "--out-dir", str(temp_dir), "--samples", "3", "--depth", "40")
        assert result.exit_code == 0, result.output

        payload = json.loads(result.stdout)
        forward = pd.read_parquet(payload["artifacts"]["forward"])
        reverse = pd.read_parquet(payload["artifacts"]["reverse"])
        assert set(forward.columns) == {"sample_id", "read_index", "sequence", "qualities"}
        assert len(forward) == len(reverse) == 120
        assert forward["sample_id"].nunique() == 3

    @pytest.mark.slow
    def test_fit_errors_and_run(self, temp_dir):
        simulated = invoke("simulate", "--out-dir", str(temp_dir), "--depth", "120")
        assert simulated.exit_code == 0, simulated.output
        reads = json.loads(simulated.stdout)["artifacts"]

        model_path = temp_dir / "models" / "forward.parquet"
        fitted = invoke("fit-errors", "--reads", reads["forward"], "--out", str(model_path))
        assert fitted.exit_code == 0, fitted.output
        model = pd.read_parquet(model_path)
        assert set(model.columns) == {"transition", "quality", "rate"}
        assert model["transition"].nunique() == 16

        out_dir = temp_dir / "run"
        ran = invoke("run", "--forward", reads["forward"], "--reverse", reads["reverse"],
                     "--out-dir", str(out_dir))
        assert ran.exit_code == 0, ran.output
        assert json.loads(ran.stdout)["summary"]["n_samples"] == 2
        assert (out_dir / "seqtab_nochim.parquet").exists()

    @pytest.mark.slow
    def test_config_override(self, temp_dir):
        config_path = temp_dir / "config.yaml"
        config_path.write_text(yaml.safe_dump({"run_id": "override"}))
        out_dir = temp_dir / "smoke"
        result = invoke("--config", str(config_path), "smoke", "--out-dir", str(out_dir),
                        "--depth", "120")
        assert result.exit_code == 0, result.output
        assert json.loads((out_dir / "config.json").read_text())["run_id"] == "override"

    def test_missing_config(self, temp_dir):
        result = invoke("--config", str(temp_dir / "missing.yaml"), "smoke",
                        "--out-dir", str(temp_dir))
        assert result.exit_code != 0
        assert "Configuration file not found" in result.output

    def test_missing_reads_file(self, temp_dir):
        result = invoke("fit-errors", "--reads", str(temp_dir / "none.parquet"),
                        "--out", str(temp_dir / "model.parquet"))
        assert result.exit_code != 0
