# src/her2amp/loader.py
"""
loader.py — Read the three cBioPortal flat files into DataFrames

Files (tab-delimited, header row first):
  - expression   : Hugo_Symbol, [Entrez_Gene_Id], <sample columns...>
  - copy number  : same shape as expression, discrete CNA calls (-2..2)
  - clinical     : leading '#' comment lines, then a header with PATIENT_ID,
                   OS_STATUS ('1:DECEASED' / '0:LIVING'), OS_MONTHS, ...

Sample column names go through make_names() (R check.names rules) so that
'TCGA-A1-A0SB-01' is read as 'TCGA.A1.A0SB.01'. The clinical patient -> sample
transform in integrator.py relies on that naming.

Every failure here is fatal: FileNotFoundError for a missing file, ValueError
for an empty or malformed one. Both messages name the file.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import List, Union

import pandas as pd

GENE_COL = "Hugo_Symbol"
PATIENT_COL = "PATIENT_ID"

PathLike = Union[str, Path]


def make_names(names: List[str]) -> List[str]:
    """
    Syntactically valid names, as R's make.names() builds them:
      - every character outside [A-Za-z0-9._] becomes '.'
      - a name starting with a digit (or '.' + digit) gets an 'X' prefix
    Uniqueness is not enforced.
    """
    out = []
    for n in names:
        s = re.sub(r"[^A-Za-z0-9._]", ".", str(n))
        if not s or re.match(r"^(\d|\.\d)", s):
            s = "X" + s
        out.append(s)
    return out


def _check_exists(path: Path, role: str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{role} file not found: {path}")
    if not path.is_file():
        raise FileNotFoundError(f"{role} path is not a file: {path}")
    return path


def _count_comment_lines(path: Path, role: str, prefix: str = "#") -> int:
    n = 0
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.startswith(prefix):
                    break
                n += 1
    except UnicodeDecodeError as e:
        raise ValueError(f"{role} file is not valid UTF-8 text: {path}") from e
    return n


def _read_tsv(path: Path, role: str, skiprows: int = 0) -> pd.DataFrame:
    try:
        df = pd.read_csv(path, sep="\t", skiprows=skiprows, dtype={GENE_COL: str, PATIENT_COL: str})
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"{role} file is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"{role} file is not valid tab-delimited text: {path} ({e})") from e
    except UnicodeDecodeError as e:
        raise ValueError(f"{role} file is not valid UTF-8 text: {path}") from e
    if df.shape[1] < 2:
        raise ValueError(f"{role} file has fewer than two columns (wrong delimiter?): {path}")
    return df


def _read_gene_matrix(path: PathLike, role: str, check_names: bool) -> pd.DataFrame:
    path = _check_exists(Path(path), role)
    df = _read_tsv(path, role)
    if GENE_COL not in df.columns:
        raise ValueError(f"{role} file {path} has no '{GENE_COL}' column; got {list(df.columns[:5])}")
    if check_names:
        df.columns = make_names(list(df.columns))
    print(f"[loader] {role}: {df.shape[0]} rows x {df.shape[1]} columns <- {path.name}")
    return df


def read_expression(path: PathLike, check_names: bool = True) -> pd.DataFrame:
    return _read_gene_matrix(path, "Expression", check_names)


def read_copy_number(path: PathLike, check_names: bool = True) -> pd.DataFrame:
    return _read_gene_matrix(path, "Copy-number", check_names)


def read_clinical(path: PathLike) -> pd.DataFrame:
    """Clinical patient table with the '#' header block skipped. PATIENT_ID stays as-is."""
    path = _check_exists(Path(path), "Clinical")
    skip = _count_comment_lines(path, "Clinical")
    df = _read_tsv(path, "Clinical", skiprows=skip)
    if PATIENT_COL not in df.columns:
        raise ValueError(f"Clinical file {path} has no '{PATIENT_COL}' column; got {list(df.columns[:5])}")
    df[PATIENT_COL] = df[PATIENT_COL].astype(str).str.strip()
    print(f"[loader] Clinical: {df.shape[0]} patients x {df.shape[1]} attributes "
          f"(skipped {skip} comment lines) <- {path.name}")
    return df
