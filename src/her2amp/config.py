# src/her2amp/config.py
"""
config.py — YAML config loading and the explicit path set handed to every step

Inputs
------
CONFIG_PATH : path to pipeline_config.yaml (default: config/pipeline_config.yaml)

pipeline_config.yaml:
  inputs:
    expression:  data/raw/data_mrna_seq_v2_rsem.txt
    clinical:    data/raw/data_clinical_patient.txt
    copy_number: data/raw/data_cna.txt
  output_dir: data/results
  integrate: {...}
  diff_expr: {...}
  enrichment: {...}
  survival: {...}

Relative paths are resolved against the project root (the parent of the
config/ directory holding the YAML), not the current working directory.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

DEFAULT_CONFIG = "config/pipeline_config.yaml"

# Per-step defaults; YAML values override key by key.
DEFAULTS: Dict[str, Dict[str, Any]] = {
    "integrate": {
        "sample_prefix": "TCGA",
        "target_gene": "ERBB2",
        "make_names": True,
        "id_separator": ".",
        "sample_suffix": ".01",
    },
    "diff_expr": {
        "min_count": 10,
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "reference": "NotAmplified",
        "heatmap_top_n": 50,
    },
    "enrichment": {
        "gene_sets": ["GO_Biological_Process_2023", "KEGG_2021_Human"],
        "organism": "human",
        "cutoff": 0.05,
        "min_genes": 5,
        "top_terms": 20,
    },
    "survival": {
        "time_col": "OS_MONTHS",
        "status_col": "OS_STATUS",
        "top_genes": 100,
        "l1_ratio": 1.0,
        "n_folds": 5,
        "min_events": 10,
        "seed": 42,
    },
}


def load_config(cfg_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Read the YAML config. Raises FileNotFoundError naming the path."""
    cfg_path = Path(cfg_path or os.getenv("CONFIG_PATH", DEFAULT_CONFIG))
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with open(cfg_path, "r") as f:
        cfg = yaml.safe_load(f) or {}
    cfg["_config_path"] = str(cfg_path.resolve())
    return cfg


def step_cfg(cfg: Dict[str, Any], step: str) -> Dict[str, Any]:
    """Defaults for `step` overlaid with whatever the YAML sets."""
    return {**DEFAULTS.get(step, {}), **((cfg or {}).get(step) or {})}


def _project_root(cfg: Dict[str, Any]) -> Path:
    cp = cfg.get("_config_path")
    if not cp:
        return Path.cwd()
    cp = Path(cp)
    # config/pipeline_config.yaml -> project root
    return cp.parent.parent if cp.parent.name == "config" else cp.parent


@dataclass(frozen=True)
class PipelinePaths:
    expression: Path
    clinical: Path
    copy_number: Path
    output_dir: Path

    @property
    def integrated_dir(self) -> Path:
        return self.output_dir / "integrated"

    @property
    def diff_expr_dir(self) -> Path:
        return self.output_dir / "diff_expr"

    @property
    def enrichment_dir(self) -> Path:
        return self.output_dir / "enrichment"

    @property
    def survival_dir(self) -> Path:
        return self.output_dir / "survival"

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any]) -> "PipelinePaths":
        root = _project_root(cfg)
        inputs = cfg.get("inputs") or {}
        missing = [k for k in ("expression", "clinical", "copy_number") if not inputs.get(k)]
        if missing:
            raise KeyError(f"config.inputs is missing: {', '.join(missing)}")

        def _abs(p) -> Path:
            p = Path(p)
            return p if p.is_absolute() else root / p

        return cls(
            expression=_abs(inputs["expression"]),
            clinical=_abs(inputs["clinical"]),
            copy_number=_abs(inputs["copy_number"]),
            output_dir=_abs(cfg.get("output_dir", "data/results")),
        )
