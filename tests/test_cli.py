import json

import pandas as pd

from asiste_rd.cli import main


def test_run_on_simulated_data(tmp_path, capsys):
    code = main([
        "run", "--simulate", "800", "--orders", "1", "--subgroups", "09",
        "--crosscheck", "--output-dir", str(tmp_path),
    ])
    assert code == 0
    results = pd.read_csv(tmp_path / "rd_results.csv")
    assert len(results) == 10
    assert (tmp_path / "density_test.csv").exists()
    forest = pd.read_csv(tmp_path / "forest_summary.csv")
    assert forest["Group"].tolist() == ["Kids (<18)"]
    summary = json.loads((tmp_path / "run_summary.json").read_text())
    assert summary["attempted"] == 10
    assert "Run summary" in capsys.readouterr().out


def test_density_command(tmp_path):
    assert main(["density", "--simulate", "800", "--output-dir", str(tmp_path)]) == 0
    row = pd.read_csv(tmp_path / "density_test.csv").iloc[0]
    assert row["mode"] == "rd"


def test_configuration_error_exit_code(tmp_path):
    cfg = tmp_path / "bad.json"
    cfg.write_text(json.dumps({"vce": "hc9"}))
    assert main(["run", "--simulate", "100", "--config", str(cfg), "--output-dir", str(tmp_path)]) == 2
