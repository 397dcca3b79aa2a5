from typer.testing import CliRunner

from almost_matching.cli import app

from conftest import make_synthetic_data

runner = CliRunner()


def test_flame_command_writes_outputs(tmp_path):
    data_path = tmp_path / "units.csv"
    holdout_path = tmp_path / "holdout.csv"
    make_synthetic_data(120, seed=3).to_csv(data_path, index=False)
    make_synthetic_data(80, seed=4).to_csv(holdout_path, index=False)

    result = runner.invoke(
        app,
        ["flame", str(data_path), "--holdout", str(holdout_path), "--output-dir", str(tmp_path)],
    )
    assert result.exit_code == 0, result.output
    assert "Iterations:" in result.output
    assert (tmp_path / "flame_units.csv").exists()
    assert (tmp_path / "flame_matched.csv").exists()


def test_dame_command_with_iteration_limit(tmp_path):
    data_path = tmp_path / "units.csv"
    make_synthetic_data(150, seed=5).to_csv(data_path, index=False)
    result = runner.invoke(
        app,
        ["dame", str(data_path), "--holdout-fraction", "0.2", "--early-stop-iterations", "2", "--random-state", "0"],
    )
    assert result.exit_code == 0, result.output
    assert "Iterations: " in result.output


def test_missing_file_is_rejected(tmp_path):
    result = runner.invoke(app, ["flame", str(tmp_path / "nope.csv")])
    assert result.exit_code != 0


def test_invalid_option_exits_with_error(tmp_path):
    data_path = tmp_path / "units.csv"
    make_synthetic_data(60, seed=6).to_csv(data_path, index=False)
    result = runner.invoke(app, ["flame", str(data_path), "--missing-data", "sometimes"])
    assert result.exit_code == 1


def test_dame_forwards_balancing_weight_and_epsilon_switch(tmp_path, monkeypatch):
    import almost_matching.cli as cli

    seen = {}
    real_run_dame = cli.run_dame

    def recording_run_dame(df, **kwargs):
        seen.update(kwargs)
        return real_run_dame(df, **kwargs)

    monkeypatch.setattr(cli, "run_dame", recording_run_dame)
    data_path = tmp_path / "units.csv"
    make_synthetic_data(150, seed=7).to_csv(data_path, index=False)
    result = runner.invoke(
        app,
        [
            "dame",
            str(data_path),
            "--n-flame-iters",
            "1",
            "--C",
            "0.5",
            "--no-epsilon-stop",
            "--early-stop-iterations",
            "3",
            "--random-state",
            "0",
        ],
    )
    assert result.exit_code == 0, result.output
    assert seen["C"] == 0.5
    assert seen["n_flame_iters"] == 1
    assert seen["early_stop_epsilon"] is None
