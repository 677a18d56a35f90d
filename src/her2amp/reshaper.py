# src/her2amp/reshaper.py
"""
reshaper.py — wide (gene x sample columns) <-> long (gene_id, sample_id, value)

Which columns are samples is decided by a fixed dataset prefix ('TCGA' for the
TCGA PanCancer Atlas studies); everything else (Hugo_Symbol, Entrez_Gene_Id, ...)
is row metadata. Sample names are carried over verbatim.
"""
from __future__ import annotations

from typing import List

import pandas as pd

from .loader import GENE_COL


def sample_columns(df: pd.DataFrame, prefix: str) -> List[str]:
    cols = [c for c in df.columns if str(c).startswith(prefix)]
    if not cols:
        raise ValueError(f"No sample columns start with prefix '{prefix}'; first columns: {list(df.columns[:5])}")
    return cols


def wide_to_long(
    df: pd.DataFrame,
    prefix: str,
    id_col: str = GENE_COL,
    value_name: str = "expression",
) -> pd.DataFrame:
    """
    One row per (gene, sample) cell. Non-numeric cells become NaN (kept, so the
    aggregator can decide); rows without a gene symbol are dropped.
    """
    samples = sample_columns(df, prefix)
    wide = df[[id_col] + samples].copy()
    wide = wide.loc[wide[id_col].notna()]
    wide[id_col] = wide[id_col].astype(str).str.strip()
    wide = wide.loc[wide[id_col] != ""]

    long_df = wide.melt(id_vars=id_col, value_vars=samples, var_name="sample_id", value_name=value_name)
    long_df = long_df.rename(columns={id_col: "gene_id"})
    long_df[value_name] = pd.to_numeric(long_df[value_name], errors="coerce")
    return long_df.reset_index(drop=True)


def long_to_wide(long_df: pd.DataFrame, value_col: str = "expression") -> pd.DataFrame:
    """Pivot back to gene rows x sample columns. (gene_id, sample_id) must be unique."""
    wide = long_df.pivot(index="gene_id", columns="sample_id", values=value_col)
    wide.columns.name = None
    return wide
