# src/her2amp/diff_expr.py
"""
diff_expr.py — HER2-amplified vs not-amplified differential expression

The negative-binomial fit, size factors and BH correction all come from
PyDESeq2; this module only shapes the inputs, calls it through a narrow
interface and writes the results.

    fit_deseq(counts: genes x samples, groups: Series[sample_id -> label]) -> DEResult

Anything with the same signature can be passed as `engine=` to run_diff_expr().

Inputs  (<output_dir>/integrated/): expression_matrix.parquet, sample_metadata.csv
Outputs (<output_dir>/diff_expr/):
  deseq_results.csv       # all genes: baseMean, log2FoldChange, lfcSE, stat, pvalue, padj
  significant_genes.csv   # padj < padj_cutoff and |log2FoldChange| >= log2fc_cutoff
  normalized_counts.csv   # size-factor normalized counts (genes x samples)
  deseq_bundle.pkl        # {"model", "results", "normalized"}
  pca.png, heatmap.png
"""
from __future__ import annotations

import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

# Matplotlib MUST be set to Agg before importing pyplot
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.colors import ListedColormap
from sklearn.decomposition import PCA

from .config import PipelinePaths, step_cfg
from .integrator import AMPLIFIED, NOT_AMPLIFIED, impute_missing, load_integrated

STATUS_COLORS = {AMPLIFIED: "#d62728", NOT_AMPLIFIED: "#1f77b4"}


@dataclass
class DEResult:
    results: pd.DataFrame       # index gene_id
    normalized: pd.DataFrame    # genes x samples
    model: Any = None


# ==========================
# Input shaping
# ==========================

def prepare_counts(matrix: pd.DataFrame, min_count: int = 10) -> pd.DataFrame:
    """
    Expression matrix -> integer count matrix for the NB model:
    impute NaN by sample mean, clip negatives, round, drop genes whose total
    count is below min_count.
    """
    counts = impute_missing(matrix).clip(lower=0).round().astype(np.int64)
    keep = counts.sum(axis=1) >= min_count
    dropped = int((~keep).sum())
    if dropped:
        print(f"[diff_expr] Filtered {dropped} low-count genes (total < {min_count}); {int(keep.sum())} remain")
    return counts.loc[keep]


def check_groups(groups: pd.Series, reference: str = NOT_AMPLIFIED) -> None:
    sizes = groups.value_counts()
    if len(sizes) < 2:
        raise ValueError(f"Need two HER2 groups for differential expression; got {sizes.to_dict()}")
    if reference not in sizes.index:
        raise ValueError(f"Reference level '{reference}' not present in groups {sizes.to_dict()}")
    small = sizes[sizes < 2]
    if not small.empty:
        raise ValueError(f"Each group needs at least 2 samples; got {sizes.to_dict()}")


# ==========================
# Engine
# ==========================

def fit_deseq(counts: pd.DataFrame, groups: pd.Series, reference: str = NOT_AMPLIFIED) -> DEResult:
    """PyDESeq2 fit of ~condition, contrast <other level> vs reference."""
    check_groups(groups, reference)
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.ds import DeseqStats

    samples = counts.columns.tolist()
    meta = pd.DataFrame({"condition": groups.loc[samples].astype(str).values}, index=samples)
    test_level = [lv for lv in sorted(meta["condition"].unique()) if lv != reference][0]

    dds = DeseqDataSet(
        counts=counts.T,            # PyDESeq2 expects samples x genes
        metadata=meta,
        design="~condition",
        refit_cooks=True,
        quiet=True,
    )
    dds.deseq2()

    stat_res = DeseqStats(dds, contrast=["condition", test_level, reference], quiet=True)
    stat_res.summary()

    results = stat_res.results_df.copy()
    results.index.name = "gene_id"
    normalized = pd.DataFrame(dds.layers["normed_counts"], index=dds.obs_names, columns=dds.var_names).T
    normalized.index.name = "gene_id"
    return DEResult(results=results, normalized=normalized, model=dds)


def select_significant(results: pd.DataFrame, padj_cutoff: float = 0.05, log2fc_cutoff: float = 1.0) -> pd.DataFrame:
    ok = results["padj"].notna() & (results["padj"] < padj_cutoff)
    ok &= results["log2FoldChange"].abs() >= log2fc_cutoff
    return results.loc[ok].sort_values("padj")


# ==========================
# Plots
# ==========================

def plot_pca(normalized: pd.DataFrame, groups: pd.Series, filename: str, title: str = "PCA") -> None:
    logc = np.log2(normalized + 1.0)
    logc = logc.loc[logc.var(axis=1) > 0]
    if min(logc.shape) < 2:
        print(f"[diff_expr] SKIP PCA: {logc.shape[0]} variable genes x {logc.shape[1]} samples (need at least 2 of each).")
        return
    pca = PCA(n_components=2)
    pcs = pca.fit_transform(logc.T.to_numpy())
    var = pca.explained_variance_ratio_ * 100

    plt.figure(figsize=(7, 6))
    labels = groups.loc[logc.columns].to_numpy()
    for grp in sorted(set(labels)):
        ix = labels == grp
        plt.scatter(pcs[ix, 0], pcs[ix, 1], s=18, alpha=0.8, label=grp, c=STATUS_COLORS.get(grp))
    plt.xlabel(f"PC1 ({var[0]:.1f}%)")
    plt.ylabel(f"PC2 ({var[1]:.1f}%)")
    plt.title(title)
    plt.legend(title="HER2")
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(filename, bbox_inches="tight", dpi=150)
    plt.close()
    print(f"[diff_expr] Saved PCA plot -> {filename}")


def plot_heatmap(normalized: pd.DataFrame, genes, groups: pd.Series, filename: str, title: str = "Top DE genes") -> None:
    """Row z-scores of log2 normalized counts, samples ordered by HER2 status."""
    order = groups.sort_values().index.tolist()
    logc = np.log2(normalized.loc[list(genes), order] + 1.0)
    z = logc.sub(logc.mean(axis=1), axis=0).div(logc.std(axis=1, ddof=0).replace(0, np.nan), axis=0).fillna(0.0)

    fig, (ax_bar, ax) = plt.subplots(
        2, 1, figsize=(10, max(4, 0.18 * len(z) + 1.5)),
        gridspec_kw={"height_ratios": [0.4, max(4, 0.18 * len(z))]}, sharex=True,
    )
    strip = np.array([[0 if groups[s] == NOT_AMPLIFIED else 1 for s in order]])
    ax_bar.imshow(strip, aspect="auto", cmap=ListedColormap(
        [STATUS_COLORS[NOT_AMPLIFIED], STATUS_COLORS[AMPLIFIED]]), vmin=0, vmax=1)
    ax_bar.set_yticks([])
    ax_bar.set_title(title)

    im = ax.imshow(z.to_numpy(), aspect="auto", cmap="RdBu_r", vmin=-3, vmax=3)
    ax.set_yticks(range(len(z)))
    ax.set_yticklabels(z.index, fontsize=6)
    ax.set_xticks([])
    ax.set_xlabel(f"Samples (left: {NOT_AMPLIFIED}, right: {AMPLIFIED})")
    fig.colorbar(im, ax=ax, fraction=0.03, label="z-score")
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filename, bbox_inches="tight", dpi=150)
    plt.close(fig)
    print(f"[diff_expr] Saved heatmap -> {filename}")


# ==========================
# Step
# ==========================

def save_bundle(result: DEResult, filename: Path) -> Path:
    with open(filename, "wb") as f:
        pickle.dump({"model": result.model, "results": result.results, "normalized": result.normalized}, f)
    return Path(filename)


def load_diff_expr(in_dir: Path):
    """(results, significant, normalized) as written by run_diff_expr."""
    in_dir = Path(in_dir)
    res_path = in_dir / "deseq_results.csv"
    if not res_path.exists():
        raise FileNotFoundError(f"{res_path} not found (run diff_expr first)")
    results = pd.read_csv(res_path, index_col="gene_id")
    sig = pd.read_csv(in_dir / "significant_genes.csv", index_col="gene_id")
    normalized = pd.read_csv(in_dir / "normalized_counts.csv", index_col="gene_id")
    return results, sig, normalized


def run_diff_expr(cfg: dict, engine: Optional[Callable[..., DEResult]] = None):
    engine = engine or fit_deseq
    dc = step_cfg(cfg, "diff_expr")
    paths = PipelinePaths.from_cfg(cfg)
    out_dir = paths.diff_expr_dir
    out_dir.mkdir(parents=True, exist_ok=True)

    matrix, meta, _clinical = load_integrated(paths.integrated_dir)
    counts = prepare_counts(matrix, min_count=int(dc["min_count"]))
    groups = meta.loc[counts.columns, "her2_status"]
    check_groups(groups, reference=dc["reference"])
    print(f"[diff_expr] {counts.shape[0]} genes x {counts.shape[1]} samples; groups={groups.value_counts().to_dict()}")

    result = engine(counts, groups, reference=dc["reference"])
    result.results.to_csv(out_dir / "deseq_results.csv", index_label="gene_id")
    result.normalized.to_csv(out_dir / "normalized_counts.csv", index_label="gene_id")
    save_bundle(result, out_dir / "deseq_bundle.pkl")

    sig = select_significant(result.results, float(dc["padj_cutoff"]), float(dc["log2fc_cutoff"]))
    sig.to_csv(out_dir / "significant_genes.csv", index_label="gene_id")
    n_up = int((sig["log2FoldChange"] > 0).sum())
    print(f"[diff_expr] {len(sig)} significant genes (padj < {dc['padj_cutoff']}, "
          f"|log2FC| >= {dc['log2fc_cutoff']}): {n_up} up / {len(sig) - n_up} down in {AMPLIFIED}")

    plot_pca(result.normalized, groups, str(out_dir / "pca.png"), title="PCA of normalized counts by HER2 status")
    if sig.empty:
        print("[diff_expr] SKIP heatmap: no significant genes.")
    else:
        top = sig.index[: int(dc["heatmap_top_n"])]
        plot_heatmap(result.normalized, top, groups, str(out_dir / "heatmap.png"),
                     title=f"Top {len(top)} DE genes ({AMPLIFIED} vs {NOT_AMPLIFIED})")
    return result, sig
