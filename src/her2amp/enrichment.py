# src/her2amp/enrichment.py
"""
enrichment.py — GO / KEGG over-representation of the significant DE genes

The hypergeometric test and multiple-testing correction are gseapy's
(`gseapy.enrichr`). Two modes, chosen per entry of enrichment.gene_sets:
  - an Enrichr library name (e.g. GO_Biological_Process_2023, KEGG_2021_Human):
    queried through the Enrichr web API;
  - a local .gmt file: tested offline against the background of all genes that
    went into differential expression.

Inputs  (<output_dir>/diff_expr/): significant_genes.csv, deseq_results.csv
Outputs (<output_dir>/enrichment/):
  enrichment_<library>.csv   # term, overlap, pvalue, padj, odds_ratio, combined_score, genes
  enrichment_summary.csv     # all libraries, sorted by padj
  enrichment_<library>.png   # top terms bar plot (-log10 padj)

No significant genes, or no enriched term, is not an error: the dependent
outputs are skipped and the step returns normally.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from .config import PipelinePaths, step_cfg
from .diff_expr import load_diff_expr

RESULT_COLUMNS = ["gene_set", "term", "overlap", "pvalue", "padj", "odds_ratio", "combined_score", "genes"]

_RENAME = {
    "Gene_set": "gene_set",
    "Term": "term",
    "Overlap": "overlap",
    "P-value": "pvalue",
    "Adjusted P-value": "padj",
    "Odds Ratio": "odds_ratio",
    "Combined Score": "combined_score",
    "Genes": "genes",
}


def library_slug(gene_set: str) -> str:
    name = Path(gene_set).stem if str(gene_set).endswith(".gmt") else str(gene_set)
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name)


def standardize_results(raw: pd.DataFrame, gene_set: str, cutoff: float) -> pd.DataFrame:
    df = raw.rename(columns=_RENAME).copy()
    df["gene_set"] = library_slug(gene_set)
    for c in RESULT_COLUMNS:
        if c not in df.columns:
            df[c] = np.nan
    df = df.loc[df["padj"] < cutoff, RESULT_COLUMNS]
    return df.sort_values("padj").reset_index(drop=True)


def run_enrichr(
    genes: Sequence[str],
    gene_set: str,
    background: Optional[Sequence[str]] = None,
    organism: str = "human",
    cutoff: float = 0.05,
) -> pd.DataFrame:
    """Over-representation of `genes` in one library; standardised and filtered at padj < cutoff."""
    import gseapy as gp

    offline = str(gene_set).endswith(".gmt")
    enr = gp.enrichr(
        gene_list=list(genes),
        gene_sets=str(gene_set),
        organism=organism,
        background=list(background) if (offline and background is not None) else None,
        outdir=None,
        cutoff=cutoff,
        no_plot=True,
    )
    raw = enr.results if enr.results is not None else pd.DataFrame()
    return standardize_results(raw, gene_set, cutoff)


def plot_terms(df: pd.DataFrame, filename: str, title: str, top_n: int = 20) -> None:
    top = df.nsmallest(top_n, "padj").iloc[::-1]
    score = -np.log10(top["padj"].clip(lower=1e-300))
    labels = [t if len(t) <= 60 else t[:57] + "..." for t in top["term"].astype(str)]

    plt.figure(figsize=(9, max(3, 0.35 * len(top) + 1)))
    plt.barh(range(len(top)), score, color="#4c72b0")
    plt.yticks(range(len(top)), labels, fontsize=8)
    plt.xlabel("-log10(adjusted p-value)")
    plt.title(title)
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(filename, bbox_inches="tight", dpi=150)
    plt.close()
    print(f"[enrichment] Saved bar plot -> {filename}")


def run_enrichment(cfg: dict, engine: Optional[Callable[..., pd.DataFrame]] = None) -> Dict[str, pd.DataFrame]:
    engine = engine or run_enrichr
    ec = step_cfg(cfg, "enrichment")
    paths = PipelinePaths.from_cfg(cfg)
    out_dir = paths.enrichment_dir

    results, sig, _normalized = load_diff_expr(paths.diff_expr_dir)
    genes = sig.index.astype(str).tolist()
    if len(genes) < int(ec["min_genes"]):
        print(f"[enrichment] SKIP: {len(genes)} significant genes (< min_genes={ec['min_genes']}).")
        return {}

    background = results.index.astype(str).tolist()
    gene_sets: List[str] = ec["gene_sets"] if isinstance(ec["gene_sets"], list) else [ec["gene_sets"]]
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[enrichment] {len(genes)} genes vs background of {len(background)}; libraries={gene_sets}")

    per_lib: Dict[str, pd.DataFrame] = {}
    for gs in gene_sets:
        slug = library_slug(gs)
        try:
            df = engine(genes, gs, background=background, organism=ec["organism"], cutoff=float(ec["cutoff"]))
        except Exception as e:
            print(f"[enrichment] {slug}: engine failed ({type(e).__name__}: {e}); skipping library.")
            continue
        if df is None or df.empty:
            print(f"[enrichment] {slug}: no terms with padj < {ec['cutoff']}.")
            continue
        df.to_csv(out_dir / f"enrichment_{slug}.csv", index=False)
        plot_terms(df, str(out_dir / f"enrichment_{slug}.png"), title=slug, top_n=int(ec["top_terms"]))
        per_lib[slug] = df
        print(f"[enrichment] {slug}: {len(df)} enriched terms")

    if not per_lib:
        print("[enrichment] SKIP summary/plots: no enriched terms in any library.")
        return per_lib

    summary = pd.concat(per_lib.values(), ignore_index=True).sort_values("padj")
    summary.to_csv(out_dir / "enrichment_summary.csv", index=False)
    print(f"[enrichment] wrote {len(summary)} terms -> {out_dir / 'enrichment_summary.csv'}")
    return per_lib
