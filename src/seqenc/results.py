"""
Unified benchmark results handling: append/overwrite. Default format is CSV.
All benchmark summaries go to data/bench.csv by default.
"""
from pathlib import Path

import pandas as pd

RESULTS_DIR = Path("data")
RESULTS_FILE = "bench"
DEFAULT_RESULTS_PATH = RESULTS_DIR / RESULTS_FILE

# Columns added after the first release, with the value older rows implicitly had.
_BACKFILL = {"dropout_type": "naive", "residual": False, "min_length": None}


def default_results_path() -> Path:
    """Default path for main results file. Uses CSV. Prefers existing file."""
    base = Path(DEFAULT_RESULTS_PATH)
    csv_path = base.with_suffix(".csv")
    parquet_path = base.with_suffix(".parquet")
    if csv_path.exists():
        return csv_path
    if parquet_path.exists():
        return parquet_path
    return csv_path


def _read_frame(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path)


def _read_results(path: Path) -> list[dict]:
    """Load existing results. Backfills missing columns for older formats."""
    if not path.exists():
        return []
    try:
        rows = _read_frame(path).to_dict("records")
    except Exception as e:
        raise IOError(f"Could not load results from {path}: {e}") from e
    for row in rows:
        for key, default in _BACKFILL.items():
            value = row.get(key)
            if key not in row or (isinstance(value, float) and pd.isna(value)):
                row[key] = default
    return rows


def _write_results(path: Path, rows: list[dict]) -> None:
    """Write results to path. Creates parent dirs."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(rows)
    if path.suffix.lower() == ".parquet":
        df.to_parquet(path, index=False)
    else:
        df.to_csv(path, index=False)


def append_results(rows: list[dict], path: Path | None = None) -> Path:
    """Append rows to results file. Returns path written to."""
    path = Path(path) if path else default_results_path()
    existing = _read_results(path) if path.exists() else []
    _write_results(path, existing + rows)
    return path


def overwrite_results(rows: list[dict], path: Path | None = None) -> Path:
    """Overwrite results file with rows. Returns path written to."""
    path = Path(path) if path else default_results_path()
    _write_results(path, rows)
    return path


def load_existing_rows(path: Path, config_signature_fn) -> tuple[list[dict], set[tuple]]:
    """Load existing rows and explored signatures. config_signature_fn(row) -> tuple."""
    if not path.exists():
        return [], set()
    rows = _read_results(path)
    signatures = {config_signature_fn(r) for r in rows}
    return rows, signatures


def get_next_run_id(path: Path | None = None) -> int:
    """Next run_id when appending (max existing + 1, or 0)."""
    path = Path(path) if path else default_results_path()
    if not path.exists():
        return 0
    try:
        df = _read_frame(path)
    except (OSError, ValueError, pd.errors.ParserError):
        return 0
    if "run_id" not in df.columns or len(df) == 0:
        return 0
    return int(df["run_id"].max()) + 1
