# src/her2amp/survival.py
"""
survival.py — Penalised Cox risk score and Kaplan–Meier checks

Goals
-----
1) Fit an L1 (lasso by default) penalised Cox model of overall survival on the
   top differentially expressed genes, with the penalty chosen by K-fold
   cross-validated concordance (scikit-survival CoxnetSurvivalAnalysis).
2) Turn the linear predictor into a risk score, split at the median into
   High / Low risk groups and compare them with Kaplan–Meier curves and a
   log-rank test (lifelines).
3) Kaplan–Meier curves by HER2 status, independent of the Cox model.

Inputs
------
<output_dir>/integrated/clinical_samples.csv   # OS_MONTHS, OS_STATUS, her2_status
<output_dir>/diff_expr/significant_genes.csv, normalized_counts.csv

Outputs (<output_dir>/survival/)
--------------------------------
  cox_coefficients.csv   # gene, coefficient, hazard_ratio (non-zero only)
  cox_cv_scores.csv      # alpha, mean/std concordance, folds used
  risk_scores.csv        # sample_id, time, event, risk_score, risk_group
  cox_model.pkl          # fitted sklearn pipeline (scaler + Coxnet)
  km_risk_groups.png
  km_her2_status.png

Notes
-----
- OS_STATUS looks like '1:DECEASED' / '0:LIVING'; OS_MONTHS may be blank.
  Rows with a blank or non-positive time are left out.
- Degenerate cases (no significant genes, too few events, every coefficient
  shrunk to zero, CV without a usable fold) skip the Cox outputs with a
  message; the HER2 KM plot is still written.
"""
from __future__ import annotations

import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd

# Matplotlib MUST be set to Agg before importing pyplot
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from lifelines import KaplanMeierFitter
from lifelines.statistics import logrank_test, multivariate_logrank_test
from sklearn.model_selection import KFold
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from .config import PipelinePaths, step_cfg
from .diff_expr import load_diff_expr
from .integrator import load_integrated

# =============================================================================
# Survival table
# =============================================================================

def derive_os_binary(df: pd.DataFrame, status_col: str = "OS_STATUS") -> pd.Series:
    """
    cBio OS_STATUS often looks like: '1:DECEASED' or '0:LIVING'.
    Return 1 for deceased, 0 otherwise.
    """
    if status_col not in df.columns:
        raise KeyError(f"Status column '{status_col}' not in clinical table")
    s = df[status_col].astype(str).str.strip().str.upper()
    out = pd.Series(0, index=df.index, dtype="int64")
    out = out.mask(s.str.startswith("1"), 1)
    out = out.mask(s.str.contains("DECEASED"), 1)
    return out.astype(int)


def build_survival_frame(clinical: pd.DataFrame, time_col: str = "OS_MONTHS", status_col: str = "OS_STATUS") -> pd.DataFrame:
    """Index sample_id; columns time, event (+ her2_status when present)."""
    if time_col not in clinical.columns:
        raise KeyError(f"Time column '{time_col}' not in clinical table")
    df = clinical.set_index("sample_id") if "sample_id" in clinical.columns else clinical.copy()
    out = pd.DataFrame({
        "time": pd.to_numeric(df[time_col], errors="coerce"),
        "event": derive_os_binary(df, status_col),
    }, index=df.index)
    if "her2_status" in df.columns:
        out["her2_status"] = df["her2_status"]
    n0 = len(out)
    out = out.loc[out["time"].notna() & (out["time"] > 0)]
    if len(out) < n0:
        print(f"[survival] Dropped {n0 - len(out)} samples with blank or non-positive {time_col}")
    return out


# =============================================================================
# Cox model
# =============================================================================

@dataclass
class CoxFit:
    coefficients: pd.Series     # index feature
    risk: pd.Series             # index sample_id
    alpha: float
    cv_scores: pd.DataFrame
    model: Any = None


def _structured_y(time: pd.Series, event: pd.Series) -> np.ndarray:
    return np.array(
        [(bool(e), float(t)) for e, t in zip(event, time)],
        dtype=[("event", bool), ("time", float)],
    )


def fit_coxnet(
    X: pd.DataFrame,
    time: pd.Series,
    event: pd.Series,
    l1_ratio: float = 1.0,
    n_folds: int = 5,
    seed: int = 42,
    n_alphas: int = 50,
    alpha_min_ratio: float = 0.01,
) -> CoxFit:
    """
    X: samples x features. The penalty path comes from a fit on all samples;
    each fold refits that path and scores every alpha by Harrell's C on the
    held-out samples. Folds with fewer than 2 events are skipped.
    """
    from sksurv.linear_model import CoxnetSurvivalAnalysis
    from sksurv.metrics import concordance_index_censored

    Xa = X.to_numpy(dtype=float)
    y = _structured_y(time, event)

    path = make_pipeline(
        StandardScaler(),
        CoxnetSurvivalAnalysis(l1_ratio=l1_ratio, n_alphas=n_alphas, alpha_min_ratio=alpha_min_ratio, max_iter=100000),
    )
    path.fit(Xa, y)
    alphas = path[-1].alphas_

    cv = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
    scores: Dict[float, list] = {float(a): [] for a in alphas}
    for fold, (tr, te) in enumerate(cv.split(Xa)):
        if y[te]["event"].sum() < 2:
            print(f"[survival] fold {fold}: < 2 events in held-out samples, skipping")
            continue
        m = make_pipeline(
            StandardScaler(),
            CoxnetSurvivalAnalysis(l1_ratio=l1_ratio, alphas=alphas, max_iter=100000),
        )
        try:
            m.fit(Xa[tr], y[tr])
        except ArithmeticError as e:
            print(f"[survival] fold {fold}: fit failed ({e}), skipping")
            continue
        X_te = m[0].transform(Xa[te])
        for a in alphas:
            pred = m[-1].predict(X_te, alpha=a)
            scores[float(a)].append(concordance_index_censored(y[te]["event"], y[te]["time"], pred)[0])

    cv_scores = pd.DataFrame({
        "alpha": list(scores.keys()),
        "mean_cindex": [np.mean(v) if v else np.nan for v in scores.values()],
        "std_cindex": [np.std(v) if v else np.nan for v in scores.values()],
        "n_folds": [len(v) for v in scores.values()],
    })
    if cv_scores["mean_cindex"].notna().sum() == 0:
        raise ValueError("Cross-validation produced no usable fold (too few events per fold)")

    # alphas are in decreasing order: idxmax picks the sparsest model among ties
    best_alpha = float(cv_scores.loc[cv_scores["mean_cindex"].idxmax(), "alpha"])
    model = make_pipeline(
        StandardScaler(),
        CoxnetSurvivalAnalysis(l1_ratio=l1_ratio, alphas=[best_alpha], max_iter=100000),
    )
    model.fit(Xa, y)

    coefs = pd.Series(model[-1].coef_[:, 0], index=X.columns, name="coefficient")
    risk = pd.Series(model.predict(Xa), index=X.index, name="risk_score")
    return CoxFit(coefficients=coefs, risk=risk, alpha=best_alpha, cv_scores=cv_scores, model=model)


def assign_risk_groups(risk: pd.Series) -> pd.Series:
    """'High' above the median risk score, 'Low' otherwise."""
    med = risk.median()
    return pd.Series(np.where(risk > med, "High", "Low"), index=risk.index, name="risk_group")


def expression_features(normalized: pd.DataFrame, sig: pd.DataFrame, samples, top_genes: int) -> pd.DataFrame:
    """samples x genes, log2(normalized + 1) of the top significant genes by padj."""
    genes = [g for g in sig.sort_values("padj").index if g in normalized.index][:top_genes]
    cols = [s for s in samples if s in normalized.columns]
    return np.log2(normalized.loc[genes, cols] + 1.0).T


# =============================================================================
# Kaplan–Meier
# =============================================================================

def plot_km_curves(clinical_df: pd.DataFrame, group_col: str, surv_time: str, surv_status: str, filename: str, title: str) -> Optional[float]:
    """
    Plot Kaplan–Meier curves stratified by group_col and save to 'filename'.
    Returns the (multivariate) log-rank p-value, or None with a single group.
    """
    kmf = KaplanMeierFitter()
    plt.figure(figsize=(8, 6))
    groups = sorted(clinical_df[group_col].dropna().unique())

    for grp in groups:
        ix = clinical_df[group_col] == grp
        kmf.fit(
            durations=clinical_df.loc[ix, surv_time],
            event_observed=clinical_df.loc[ix, surv_status],
            label=f"{grp} (n={int(ix.sum())})",
        )
        kmf.plot_survival_function()

    ax = plt.gca()
    x_min, x_max = ax.get_xlim()
    y_min, y_max = ax.get_ylim()
    x_text = x_min + 0.1 * (x_max - x_min)
    y_text = y_min + 0.1 * (y_max - y_min)

    p_value = None
    if len(groups) == 2:
        g1 = clinical_df[clinical_df[group_col] == groups[0]]
        g2 = clinical_df[clinical_df[group_col] == groups[1]]
        res = logrank_test(g1[surv_time], g2[surv_time], event_observed_A=g1[surv_status], event_observed_B=g2[surv_status])
        p_value = float(res.p_value)
        ax.text(x_text, y_text, f"Log-Rank p = {p_value:.4f}", fontsize=11, bbox=dict(facecolor="white", alpha=0.6))
    elif len(groups) > 2:
        res = multivariate_logrank_test(clinical_df[surv_time], clinical_df[group_col], clinical_df[surv_status])
        p_value = float(res.p_value)
        ax.text(x_text, y_text, f"Multivariate Log-Rank p = {p_value:.4f}", fontsize=11, bbox=dict(facecolor="white", alpha=0.6))

    plt.title(title)
    plt.xlabel("Months")
    plt.ylabel("Survival Probability")
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(filename, bbox_inches="tight")
    plt.close()
    print(f"[survival] Saved KM plot -> {filename}")
    return p_value


# =============================================================================
# Step
# =============================================================================

def run_survival(cfg: dict, engine: Optional[Callable[..., CoxFit]] = None) -> Dict[str, Any]:
    engine = engine or fit_coxnet
    sc = step_cfg(cfg, "survival")
    paths = PipelinePaths.from_cfg(cfg)
    out_dir = paths.survival_dir
    out_dir.mkdir(parents=True, exist_ok=True)
    summary: Dict[str, Any] = {"cox_fitted": False}

    _matrix, _meta, clinical = load_integrated(paths.integrated_dir)
    surv = build_survival_frame(clinical, sc["time_col"], sc["status_col"])
    n_events = int(surv["event"].sum())
    summary.update(n_samples=len(surv), n_events=n_events)
    print(f"[survival] {len(surv)} samples with survival data, {n_events} events")
    if surv.empty:
        print("[survival] SKIP: no samples with usable survival data.")
        return summary

    if "her2_status" in surv.columns and surv["her2_status"].nunique() >= 2:
        summary["her2_logrank_p"] = plot_km_curves(
            surv, "her2_status", "time", "event", str(out_dir / "km_her2_status.png"),
            title="Overall survival by HER2 status",
        )

    _results, sig, normalized = load_diff_expr(paths.diff_expr_dir)
    if sig.empty:
        print("[survival] SKIP Cox model: no significant genes.")
        return summary
    if n_events < int(sc["min_events"]):
        print(f"[survival] SKIP Cox model: {n_events} events (< min_events={sc['min_events']}).")
        return summary

    X = expression_features(normalized, sig, surv.index, int(sc["top_genes"]))
    surv = surv.loc[X.index]
    print(f"[survival] Cox features: {X.shape[1]} genes x {X.shape[0]} samples")

    try:
        fit = engine(X, surv["time"], surv["event"], l1_ratio=float(sc["l1_ratio"]),
                     n_folds=int(sc["n_folds"]), seed=int(sc["seed"]))
    except (ValueError, ArithmeticError) as e:
        print(f"[survival] SKIP Cox model: {type(e).__name__}: {e}")
        return summary

    fit.cv_scores.to_csv(out_dir / "cox_cv_scores.csv", index=False)
    nonzero = fit.coefficients[fit.coefficients != 0]
    summary.update(alpha=fit.alpha, n_selected=len(nonzero))
    print(f"[survival] alpha={fit.alpha:.4g}: {len(nonzero)} of {len(fit.coefficients)} genes kept")
    if nonzero.empty:
        print("[survival] SKIP risk groups: every coefficient was shrunk to zero.")
        return summary

    coef_df = pd.DataFrame({
        "gene": nonzero.index,
        "coefficient": nonzero.values,
        "hazard_ratio": np.exp(nonzero.values),
    })
    coef_df = coef_df.reindex(coef_df["coefficient"].abs().sort_values(ascending=False).index)
    coef_df.to_csv(out_dir / "cox_coefficients.csv", index=False)
    with open(out_dir / "cox_model.pkl", "wb") as f:
        pickle.dump(fit.model, f)

    scores = surv[["time", "event"]].copy()
    scores["risk_score"] = fit.risk.loc[scores.index]
    scores["risk_group"] = assign_risk_groups(scores["risk_score"])
    scores.to_csv(out_dir / "risk_scores.csv", index_label="sample_id")

    summary["cox_fitted"] = True
    if scores["risk_group"].nunique() >= 2:
        summary["risk_logrank_p"] = plot_km_curves(
            scores, "risk_group", "time", "event", str(out_dir / "km_risk_groups.png"),
            title="Overall survival by Cox risk group",
        )
    print(f"[survival] wrote coefficients/risk scores -> {out_dir}")
    return summary
