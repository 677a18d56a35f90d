"""
Shared fixtures: a tiny cBioPortal-style study written to tmp_path.

Samples (expression / CNA headers use the portal's hyphenated IDs):
  TCGA-AA-0001-01  ERBB2 CNA  2  -> Amplified
  TCGA-AA-0002-01  ERBB2 CNA  0  -> NotAmplified
  TCGA-AA-0003-01  ERBB2 CNA -1  -> NotAmplified (blank OS_MONTHS)
  TCGA-AA-0004-01  ERBB2 CNA  1  -> Amplified   (TP53 expression missing)
  TCGA-AA-0005-01  CNA only                     -> dropped by the join
  TCGA-AA-0006     clinical only                -> dropped by the join
'DUP' appears on two expression rows (5/7, 1/3, 1/3, 1/3).
"""
from pathlib import Path

import pandas as pd
import pytest
import yaml

from her2amp.config import load_config

EXPRESSION_TSV = """\
Hugo_Symbol\tEntrez_Gene_Id\tTCGA-AA-0001-01\tTCGA-AA-0002-01\tTCGA-AA-0003-01\tTCGA-AA-0004-01
ERBB2\t2064\t100\t20\t15\t90
GRB7\t2886\t50\t10\t8\t40
TP53\t7157\t30\t35\t33\t
DUP\t1001\t5\t1\t1\t1
DUP\t1002\t7\t3\t3\t3
"""

CNA_TSV = """\
Hugo_Symbol\tEntrez_Gene_Id\tTCGA-AA-0001-01\tTCGA-AA-0002-01\tTCGA-AA-0003-01\tTCGA-AA-0004-01\tTCGA-AA-0005-01
ERBB2\t2064\t2\t0\t-1\t1\t1
TP53\t7157\t0\t0\t-1\t0\t0
"""

CLINICAL_TSV = """\
#Patient Identifier\tOverall Survival Status\tOverall Survival (Months)\tSubtype
#Identifier to uniquely specify a patient.\tOverall patient survival status.\tOverall survival in months.\tSubtype
#STRING\tSTRING\tNUMBER\tSTRING
#1\t1\t1\t1
PATIENT_ID\tOS_STATUS\tOS_MONTHS\tSUBTYPE
TCGA-AA-0001\t1:DECEASED\t10.5\tBRCA_Her2
TCGA-AA-0002\t0:LIVING\t20\tBRCA_LumA
TCGA-AA-0003\t0:LIVING\t\tBRCA_LumB
TCGA-AA-0004\t1:DECEASED\t5\tBRCA_Her2
TCGA-AA-0006\t0:LIVING\t40\tBRCA_Basal
"""

SAMPLES = ["TCGA.AA.0001.01", "TCGA.AA.0002.01", "TCGA.AA.0003.01", "TCGA.AA.0004.01"]


def write_study(root: Path, expression=EXPRESSION_TSV, cna=CNA_TSV, clinical=CLINICAL_TSV, **overrides) -> dict:
    raw = root / "data" / "raw"
    raw.mkdir(parents=True, exist_ok=True)
    (raw / "data_mrna_seq_v2_rsem.txt").write_text(expression)
    (raw / "data_cna.txt").write_text(cna)
    (raw / "data_clinical_patient.txt").write_text(clinical)

    cfg = {
        "inputs": {
            "expression": "data/raw/data_mrna_seq_v2_rsem.txt",
            "clinical": "data/raw/data_clinical_patient.txt",
            "copy_number": "data/raw/data_cna.txt",
        },
        "output_dir": "data/results",
        "diff_expr": {"min_count": 10, "heatmap_top_n": 10},
        "enrichment": {"gene_sets": ["GO_Biological_Process_2023", "KEGG_2021_Human"], "min_genes": 1},
        "survival": {"min_events": 1, "n_folds": 2},
    }
    for section, values in overrides.items():
        cfg.setdefault(section, {}).update(values)

    cfg_dir = root / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    cfg_path = cfg_dir / "pipeline_config.yaml"
    with open(cfg_path, "w") as f:
        yaml.safe_dump(cfg, f)
    return load_config(cfg_path)


@pytest.fixture
def study_cfg(tmp_path):
    """Loaded config pointing at the synthetic study under tmp_path."""
    return write_study(tmp_path)


@pytest.fixture
def raw_dir(study_cfg, tmp_path):
    return tmp_path / "data" / "raw"


def fake_deseq(significant=("ERBB2", "GRB7")):
    """Engine with the fit_deseq signature; genes in `significant` come out at padj 1e-4, log2FC 2.5."""
    from her2amp.diff_expr import DEResult

    calls = {}

    def engine(counts, groups, reference="NotAmplified"):
        calls["counts"] = counts
        calls["groups"] = groups
        calls["reference"] = reference
        genes = counts.index
        sig = [g in significant for g in genes]
        results = pd.DataFrame({
            "baseMean": counts.mean(axis=1).to_numpy(dtype=float),
            "log2FoldChange": [2.5 if s else 0.1 for s in sig],
            "lfcSE": 0.3,
            "stat": [8.0 if s else 0.3 for s in sig],
            "pvalue": [1e-5 if s else 0.7 for s in sig],
            "padj": [1e-4 if s else 0.9 for s in sig],
        }, index=pd.Index(genes, name="gene_id"))
        return DEResult(results=results, normalized=counts.astype(float), model={"design": "~condition"})

    engine.calls = calls
    return engine


@pytest.fixture
def integrated_cfg(study_cfg):
    from her2amp.integrator import data_integrate

    data_integrate(study_cfg)
    return study_cfg


@pytest.fixture
def de_cfg(integrated_cfg):
    """Study with integrate and diff_expr outputs (fake engine) already on disk."""
    from her2amp.diff_expr import run_diff_expr

    run_diff_expr(integrated_cfg, engine=fake_deseq())
    return integrated_cfg
