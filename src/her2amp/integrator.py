# src/her2amp/integrator.py
"""
integrator.py — HER2 status, sample matching and the gene x sample matrix

Goals
-----
1) Label each sample 'Amplified' / 'NotAmplified' from the ERBB2 copy-number call
   (value > 0 is amplified; 0 and below are not).
2) Derive a sample_id for every clinical patient so it matches the expression
   column names: 'TCGA-A1-A0SB' -> 'TCGA.A1.A0SB.01'.
3) Inner-join long expression ⋈ HER2 status ⋈ clinical on sample_id, and report
   how many samples each table contributed and which ones fell out.
4) Collapse duplicate (gene, sample) rows by arithmetic mean and pivot to a
   gene x sample matrix (missing cells stay NaN), plus sample -> her2_status.

Outputs (data_integrate, under <output_dir>/integrated/)
-------------------------------------------------------
  expression_matrix.parquet   # genes x samples, NaN where a cell is missing
  expression_matrix.csv       # CSV mirror for inspection
  sample_metadata.csv         # sample_id, her2_status
  clinical_samples.csv        # one row per matched sample, all clinical attributes
  join_report.json            # per-table sample counts + dropped ids

Notes
-----
- Inner-join semantics are kept on purpose: any sample missing from one table
  is excluded. Nothing raises for that; the JoinReport is where it shows up.
  If the upstream ID format changes, the report will show every clinical
  sample as dropped.
- Duplicate gene symbols (e.g. multiple Entrez IDs per Hugo symbol) are
  averaged; the number of collapsed pairs is printed.

Run:
  python -m her2amp.main --call data_integrate
"""
from __future__ import annotations

import json
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd

from .config import PipelinePaths, step_cfg
from .loader import PATIENT_COL, read_clinical, read_copy_number, read_expression
from .reshaper import wide_to_long

AMPLIFIED = "Amplified"
NOT_AMPLIFIED = "NotAmplified"

# ==========================
# Status classifier
# ==========================

def classify_her2(cna_long: pd.DataFrame, target_gene: str = "ERBB2", value_col: str = "cna_value") -> pd.DataFrame:
    """
    One row per sample that has a non-missing copy-number value for target_gene:
      sample_id, cna_value, her2_status
    Samples without a target-gene row (or with NaN) get no label at all.
    """
    rows = cna_long.loc[cna_long["gene_id"] == target_gene, ["sample_id", value_col]]
    if rows.empty:
        raise ValueError(f"Target gene '{target_gene}' not found in copy-number data")

    rows = rows.dropna(subset=[value_col])
    # several rows for the target gene: keep the highest call per sample
    per_sample = rows.groupby("sample_id", sort=True)[value_col].max()

    out = per_sample.rename("cna_value").reset_index()
    out["her2_status"] = np.where(out["cna_value"] > 0, AMPLIFIED, NOT_AMPLIFIED)
    return out


# ==========================
# Clinical sample IDs
# ==========================

def patient_to_sample_id(patient_ids: pd.Series, sep: str = ".", suffix: str = ".01") -> pd.Series:
    """'TCGA-A1-A0SB' -> 'TCGA.A1.A0SB.01' (primary tumour sample of that patient)."""
    return patient_ids.astype(str).str.strip().str.replace("-", sep, regex=False) + suffix


def clinical_with_sample_ids(clinical: pd.DataFrame, sep: str = ".", suffix: str = ".01") -> pd.DataFrame:
    clin = clinical.copy()
    clin.insert(1 if PATIENT_COL in clin.columns else 0, "sample_id",
                patient_to_sample_id(clin[PATIENT_COL], sep=sep, suffix=suffix))
    dup = clin["sample_id"].duplicated(keep="first")
    if dup.any():
        print(f"[integrate] Clinical: {int(dup.sum())} duplicate sample_id rows, keeping first occurrence")
        clin = clin.loc[~dup]
    return clin.reset_index(drop=True)


# ==========================
# Joiner
# ==========================

@dataclass
class JoinReport:
    expression_samples: int
    status_samples: int
    clinical_samples: int
    after_status_join: int
    final_samples: int
    final_rows: int
    dropped_expression: List[str] = field(default_factory=list)
    dropped_status: List[str] = field(default_factory=list)
    dropped_clinical: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def print_summary(self) -> None:
        print(f"[integrate] Samples per table: expression={self.expression_samples} "
              f"her2_status={self.status_samples} clinical={self.clinical_samples}")
        print(f"[integrate] expression ⋈ status: {self.after_status_join} samples; "
              f"⋈ clinical: {self.final_samples} samples ({self.final_rows} rows)")
        for name, ids in (("expression", self.dropped_expression),
                          ("her2_status", self.dropped_status),
                          ("clinical", self.dropped_clinical)):
            if ids:
                head = ", ".join(ids[:5]) + (" …" if len(ids) > 5 else "")
                print(f"[integrate] Dropped {len(ids)} {name} samples with no match: {head}")


def join_records(
    expr_long: pd.DataFrame,
    status: pd.DataFrame,
    clinical: pd.DataFrame,
) -> Tuple[pd.DataFrame, JoinReport]:
    """
    expr_long ⋈ status ⋈ clinical on sample_id, inner both times.
    The surviving sample set is exactly the intersection of the three tables.
    """
    s_expr = set(expr_long["sample_id"].unique())
    s_stat = set(status["sample_id"].unique())
    s_clin = set(clinical["sample_id"].unique())

    step1 = expr_long.merge(status, on="sample_id", how="inner")
    after_status = set(step1["sample_id"].unique())
    joined = step1.merge(clinical, on="sample_id", how="inner", suffixes=("", "_clin"))
    final = set(joined["sample_id"].unique())

    report = JoinReport(
        expression_samples=len(s_expr),
        status_samples=len(s_stat),
        clinical_samples=len(s_clin),
        after_status_join=len(after_status),
        final_samples=len(final),
        final_rows=int(len(joined)),
        dropped_expression=sorted(s_expr - final),
        dropped_status=sorted(s_stat - final),
        dropped_clinical=sorted(s_clin - final),
    )
    return joined.reset_index(drop=True), report


# ==========================
# Aggregator
# ==========================

def aggregate_expression(long_df: pd.DataFrame, value_col: str = "expression") -> pd.DataFrame:
    """
    Mean over duplicate (gene_id, sample_id) rows, pivoted to genes x samples.
    A (gene, sample) pair with no row becomes NaN, never 0.
    """
    grouped = long_df.groupby(["gene_id", "sample_id"], sort=True)[value_col]
    n_dup = int((grouped.size() > 1).sum())
    if n_dup:
        print(f"[integrate] Averaged {n_dup} duplicated (gene, sample) pairs")

    matrix = grouped.mean().unstack("sample_id")
    matrix.index.name = "gene_id"
    matrix.columns.name = None
    return matrix


def sample_metadata(joined: pd.DataFrame, samples: List[str]) -> pd.DataFrame:
    """sample_id -> her2_status, one row per sample, in the given column order."""
    meta = joined[["sample_id", "her2_status"]].drop_duplicates("sample_id").set_index("sample_id")
    missing = [s for s in samples if s not in meta.index]
    if missing:
        raise ValueError(f"Matrix samples without HER2 status: {missing[:5]}")
    return meta.loc[list(samples)]


def impute_missing(matrix: pd.DataFrame) -> pd.DataFrame:
    """Replace NaN cells by the mean of their sample column; all-NaN columns -> 0."""
    n_missing = int(matrix.isna().sum().sum())
    if n_missing == 0:
        return matrix
    col_means = matrix.mean(axis=0, skipna=True)
    empty_cols = col_means.index[col_means.isna()].tolist()
    out = matrix.fillna(col_means.fillna(0.0))
    print(f"[WARN] Imputed {n_missing} missing expression values with per-sample means", file=sys.stderr)
    if empty_cols:
        print(f"[WARN] {len(empty_cols)} samples had no values at all; filled with 0: {empty_cols[:5]}",
              file=sys.stderr)
    return out


# ==========================
# Orchestration
# ==========================

@dataclass
class IntegratedDataset:
    matrix: pd.DataFrame        # genes x samples
    metadata: pd.DataFrame      # index sample_id, column her2_status
    clinical: pd.DataFrame      # one row per sample, clinical + her2 columns
    report: JoinReport


def integrate(paths: PipelinePaths, cfg: dict) -> IntegratedDataset:
    ic = step_cfg(cfg, "integrate")
    prefix = ic["sample_prefix"]
    check_names = bool(ic["make_names"])

    expr = read_expression(paths.expression, check_names=check_names)
    cna = read_copy_number(paths.copy_number, check_names=check_names)
    clin = read_clinical(paths.clinical)

    expr_long = wide_to_long(expr, prefix, value_name="expression")
    cna_long = wide_to_long(cna, prefix, value_name="cna_value")
    print(f"[integrate] Long expression: {len(expr_long)} records; long copy-number: {len(cna_long)} records")

    status = classify_her2(cna_long, target_gene=ic["target_gene"])
    counts = status["her2_status"].value_counts().to_dict()
    print(f"[integrate] {ic['target_gene']} status: {counts}")

    clin_ids = clinical_with_sample_ids(clin, sep=ic["id_separator"], suffix=ic["sample_suffix"])
    joined, report = join_records(expr_long, status, clin_ids)
    report.print_summary()
    if report.final_samples == 0:
        raise ValueError(
            "No sample_id is shared by expression, copy-number and clinical tables. "
            "Check sample_prefix / make_names / sample_suffix against the file headers."
        )

    matrix = aggregate_expression(joined)
    meta = sample_metadata(joined, matrix.columns.tolist())

    clinical_out = clin_ids.merge(status, on="sample_id", how="inner")
    clinical_out = clinical_out.loc[clinical_out["sample_id"].isin(matrix.columns)]
    clinical_out = clinical_out.set_index("sample_id").loc[matrix.columns].reset_index()

    print(f"[integrate] Matrix: {matrix.shape[0]} genes x {matrix.shape[1]} samples "
          f"({int(matrix.isna().sum().sum())} missing cells)")
    return IntegratedDataset(matrix=matrix, metadata=meta, clinical=clinical_out, report=report)


def write_integrated(ds: IntegratedDataset, out_dir: Path) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    ds.matrix.to_parquet(out_dir / "expression_matrix.parquet")
    ds.matrix.to_csv(out_dir / "expression_matrix.csv")
    ds.metadata.to_csv(out_dir / "sample_metadata.csv")
    ds.clinical.to_csv(out_dir / "clinical_samples.csv", index=False)
    with open(out_dir / "join_report.json", "w") as f:
        json.dump(ds.report.to_dict(), f, indent=2)
    return out_dir


def load_integrated(in_dir: Path) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Read back (matrix, metadata, clinical) written by data_integrate."""
    in_dir = Path(in_dir)
    pq = in_dir / "expression_matrix.parquet"
    if not pq.exists():
        raise FileNotFoundError(f"{pq} not found (run data_integrate first)")
    matrix = pd.read_parquet(pq)
    meta = pd.read_csv(in_dir / "sample_metadata.csv", index_col="sample_id")
    clinical = pd.read_csv(in_dir / "clinical_samples.csv")
    return matrix, meta, clinical


def data_integrate(cfg: dict) -> IntegratedDataset:
    paths = PipelinePaths.from_cfg(cfg)
    ds = integrate(paths, cfg)
    out = write_integrated(ds, paths.integrated_dir)
    print(f"[integrate] wrote matrix/metadata/clinical/join_report -> {out}")
    return ds
