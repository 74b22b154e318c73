"""JSON export of a completed analysis run."""

from __future__ import annotations

import json
from pathlib import Path

from ..models.run import AnalysisRun


def run_to_dict(run: AnalysisRun) -> dict:
    return run.model_dump(mode="json")


def export_run_json(run: AnalysisRun, output_path: Path) -> Path:
    """Write the run to a JSON file (UTF-8, no BOM)."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(run_to_dict(run), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    return output_path
