"""
Run report: a human-readable summary plus result.json and changes.diff.
"""

from __future__ import annotations

import json
from pathlib import Path

from .models import EditResult


def format_summary(result: EditResult) -> str:
    lines = []
    status = "SUCCESS" if result.success else "FAILED"
    lines.append(f"[{status}] scope={result.scope or '-'}")
    if result.error:
        lines.append(f"Error: {result.error}")
    lines.append(
        f"Files scanned: {result.files_scanned} | nodes: {result.nodes_extracted} | "
        f"replacements: {result.total_replacements} | skipped: {result.skipped_nodes}"
    )
    if result.modified_files:
        lines.append("Modified files:")
        lines.extend(f"  - {p}" for p in result.modified_files)
    for b in result.batches:
        state = "ok" if b.success else f"failed ({b.error_message})"
        lines.append(
            f"  {b.batch_id}: {state}, {b.successful_modifications} to apply, "
            f"{b.rejected_modifications} rejected, {b.invalid_modifications} invalid"
        )
    lines.append(f"Average confidence: {result.average_confidence:.2f}")
    lines.append(f"Time: {result.processing_time_ms} ms")
    if result.strategy_summary:
        lines.append(result.strategy_summary)
    return "\n".join(lines)


def save_report(result: EditResult, output_dir: str | Path) -> Path:
    """Write result.json (camelCase contract) and changes.diff. Returns the JSON path."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    # sources may carry undecodable bytes as surrogates: the diff gets them back
    # verbatim, the JSON gets them as \udcXX escapes
    json_path = out / "result.json"
    json_path.write_text(
        json.dumps(result.to_contract(), indent=2, ensure_ascii=False), encoding="utf-8", errors="backslashreplace"
    )
    with open(out / "changes.diff", "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write("".join(result.diffs))
    return json_path
