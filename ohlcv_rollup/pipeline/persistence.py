from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .backfill import BackfillReport


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class PersistConfig:
    """Run artifacts land in <root_dir>/<dataset_slug>/<run_id>_<kind>_<market>.csv."""

    root_dir: Path
    dataset_slug: str

    def dataset_dir(self) -> Path:
        d = self.root_dir / self.dataset_slug
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, run_id: str, kind: str, market_key: str) -> Path:
        # market keys may be symbols or ids with path separators
        return self.dataset_dir() / f"{run_id}_{kind}_{_UNSAFE.sub('_', market_key)}.csv"


def now_utc_run_id(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%SZ")


def write_backfill_report(cfg: PersistConfig, run_id: str, report: BackfillReport) -> Path:
    out = cfg.artifact_path(run_id, "backfill", report.market_key)
    report.to_frame().to_csv(out, index=False)
    return out
