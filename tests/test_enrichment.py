import pandas as pd
import pytest

from her2amp.enrichment import RESULT_COLUMNS, library_slug, run_enrichment, run_enrichr, standardize_results

RAW_ENRICHR = pd.DataFrame({
    "Gene_set": ["GO_Biological_Process_2023"] * 3,
    "Term": ["ERBB2 signaling pathway (GO:0038128)", "cell migration (GO:0016477)", "noise"],
    "Overlap": ["2/20", "1/300", "1/900"],
    "P-value": [1e-6, 1e-3, 0.4],
    "Adjusted P-value": [1e-5, 0.01, 0.6],
    "Odds Ratio": [120.0, 8.0, 1.0],
    "Combined Score": [1650.0, 55.0, 0.9],
    "Genes": ["ERBB2;GRB7", "ERBB2", "GRB7"],
})


@pytest.mark.parametrize("name, slug", [
    ("KEGG_2021_Human", "KEGG_2021_Human"),
    ("GO Biological Process 2023", "GO_Biological_Process_2023"),
    ("/data/sets/h.all.v2023.gmt", "h.all.v2023"),
])
def test_library_slug(name, slug):
    assert library_slug(name) == slug


def test_standardize_results_filters_and_sorts():
    df = standardize_results(RAW_ENRICHR.iloc[::-1], "GO_Biological_Process_2023", cutoff=0.05)
    assert list(df.columns) == RESULT_COLUMNS
    assert df["term"].tolist() == ["ERBB2 signaling pathway (GO:0038128)", "cell migration (GO:0016477)"]
    assert (df["padj"] < 0.05).all()


def test_standardize_results_fills_missing_columns():
    raw = pd.DataFrame({"Term": ["t"], "Adjusted P-value": [0.001], "Genes": ["ERBB2"]})
    df = standardize_results(raw, "custom.gmt", cutoff=0.05)
    assert df.loc[0, "gene_set"] == "custom"
    assert df["odds_ratio"].isna().all()


def _fake_enrichr(calls, failing=()):
    def engine(genes, gene_set, background=None, organism="human", cutoff=0.05):
        calls.append({"genes": list(genes), "gene_set": gene_set, "background": background})
        if gene_set in failing:
            raise ConnectionError("Enrichr unreachable")
        return standardize_results(RAW_ENRICHR, gene_set, cutoff)
    return engine


def test_run_enrichment_writes_per_library_and_summary(de_cfg, tmp_path):
    calls = []
    per_lib = run_enrichment(de_cfg, engine=_fake_enrichr(calls))

    assert set(per_lib) == {"GO_Biological_Process_2023", "KEGG_2021_Human"}
    assert sorted(calls[0]["genes"]) == ["ERBB2", "GRB7"]
    assert set(calls[0]["background"]) == {"DUP", "ERBB2", "GRB7", "TP53"}

    out = tmp_path / "data" / "results" / "enrichment"
    for slug in per_lib:
        assert (out / f"enrichment_{slug}.csv").exists()
        assert (out / f"enrichment_{slug}.png").exists()
    summary = pd.read_csv(out / "enrichment_summary.csv")
    assert len(summary) == 4
    assert summary["padj"].is_monotonic_increasing
    assert set(summary["gene_set"]) == set(per_lib)


def test_failing_library_is_skipped(de_cfg, tmp_path, capsys):
    calls = []
    per_lib = run_enrichment(de_cfg, engine=_fake_enrichr(calls, failing={"KEGG_2021_Human"}))
    assert list(per_lib) == ["GO_Biological_Process_2023"]
    assert len(calls) == 2
    assert "KEGG_2021_Human: engine failed (ConnectionError" in capsys.readouterr().out
    assert not (tmp_path / "data" / "results" / "enrichment" / "enrichment_KEGG_2021_Human.csv").exists()


def test_no_enriched_terms_writes_no_summary(de_cfg, tmp_path):
    per_lib = run_enrichment(de_cfg, engine=lambda *a, **k: pd.DataFrame(columns=RESULT_COLUMNS))
    assert per_lib == {}
    assert not (tmp_path / "data" / "results" / "enrichment" / "enrichment_summary.csv").exists()


def test_too_few_genes_skips(de_cfg, tmp_path):
    de_cfg["enrichment"]["min_genes"] = 3
    calls = []
    assert run_enrichment(de_cfg, engine=_fake_enrichr(calls)) == {}
    assert calls == []


def test_run_enrichr_offline_gmt(tmp_path):
    pytest.importorskip("gseapy")
    amplicon = ["ERBB2", "GRB7", "PGAP3", "STARD3", "MIEN1", "TCAP", "PNMT"]
    others = [f"BG{i}" for i in range(120)]
    gmt = tmp_path / "toy_sets.gmt"
    gmt.write_text(
        "HER2_AMPLICON\tna\t" + "\t".join(amplicon) + "\n"
        "UNRELATED_SET\tna\t" + "\t".join(others[:15]) + "\n"
    )

    df = run_enrichr(amplicon[:6], str(gmt), background=amplicon + others, cutoff=0.05)

    assert list(df.columns) == RESULT_COLUMNS
    assert df["term"].tolist() == ["HER2_AMPLICON"]
    assert df.loc[0, "gene_set"] == "toy_sets"
    assert df.loc[0, "padj"] < 0.05
    assert set(str(df.loc[0, "genes"]).split(";")) == set(amplicon[:6])
