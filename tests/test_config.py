from pathlib import Path

import pytest
import yaml

from her2amp.config import DEFAULTS, PipelinePaths, load_config, step_cfg


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="Config file not found"):
        load_config(tmp_path / "nope.yaml")


def test_load_config_reads_env(tmp_path, monkeypatch):
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump({"output_dir": "out"}))
    monkeypatch.setenv("CONFIG_PATH", str(path))
    cfg = load_config()
    assert cfg["output_dir"] == "out"
    assert cfg["_config_path"] == str(path.resolve())


def test_paths_resolve_against_project_root(study_cfg, tmp_path):
    paths = PipelinePaths.from_cfg(study_cfg)
    assert paths.expression == tmp_path / "data" / "raw" / "data_mrna_seq_v2_rsem.txt"
    assert paths.copy_number == tmp_path / "data" / "raw" / "data_cna.txt"
    assert paths.integrated_dir == tmp_path / "data" / "results" / "integrated"
    assert paths.survival_dir.name == "survival"


def test_absolute_paths_are_kept(tmp_path):
    cfg = {
        "_config_path": str(tmp_path / "config" / "pipeline_config.yaml"),
        "inputs": {"expression": "/abs/expr.txt", "clinical": "c.txt", "copy_number": "n.txt"},
    }
    paths = PipelinePaths.from_cfg(cfg)
    assert paths.expression == Path("/abs/expr.txt")
    assert paths.clinical == tmp_path / "c.txt"
    assert paths.output_dir == tmp_path / "data" / "results"


def test_missing_inputs_are_named():
    with pytest.raises(KeyError, match="clinical, copy_number"):
        PipelinePaths.from_cfg({"inputs": {"expression": "e.txt"}})


def test_step_cfg_overlays_defaults():
    sc = step_cfg({"survival": {"n_folds": 3}}, "survival")
    assert sc["n_folds"] == 3
    assert sc["time_col"] == DEFAULTS["survival"]["time_col"]
    assert step_cfg({}, "diff_expr") == DEFAULTS["diff_expr"]
