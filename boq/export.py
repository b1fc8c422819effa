"""Downloadable result artifacts (CSV / XLSX) for completed jobs."""
from __future__ import annotations

import io
import re
from enum import Enum
from typing import Mapping, Sequence

import pandas as pd

from .errors import ValidationError
from .schemas import BatchJob, MatchedItem, MatchingJob

RESULT_COLUMNS = [
    "Original Description",
    "Unit",
    "Quantity",
    "Matched Description",
    "Matched Rate",
    "Confidence (%)",
]

SUMMARY_COLUMNS = [
    "File Name",
    "Items Processed",
    "Average Confidence (%)",
    "Processing Time (s)",
    "Status",
]

_SHEET_NAME_MAX = 31
_SHEET_NAME_BAD = re.compile(r"[\[\]:*?/\\]")


class ExportFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"

    @property
    def media_type(self) -> str:
        if self is ExportFormat.CSV:
            return "text/csv"
        return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

    @classmethod
    def parse(cls, value: str | ExportFormat) -> ExportFormat:
        try:
            return cls(str(value.value if isinstance(value, cls) else value).lower())
        except ValueError:
            raise ValidationError(f"Unsupported export format '{value}'") from None


def results_frame(results: Sequence[MatchedItem]) -> pd.DataFrame:
    """One row per matched item; confidence shown as a percentage, one decimal."""
    rows = [
        {
            "Original Description": r.source_description,
            "Unit": r.unit or "",
            "Quantity": r.quantity,
            "Matched Description": r.matched_description,
            "Matched Rate": r.matched_rate,
            "Confidence (%)": round(r.confidence * 100, 1),
        }
        for r in results
    ]
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def export_job(job: MatchingJob, fmt: ExportFormat | str = ExportFormat.XLSX) -> bytes:
    """Serialize a completed job's results."""
    fmt = ExportFormat.parse(fmt)
    df = results_frame(job.results or ())
    if fmt is ExportFormat.CSV:
        return df.to_csv(index=False).encode("utf-8")

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Matched Results", index=False)
    return buffer.getvalue()


def sheet_name(name: str, taken: set[str]) -> str:
    """Excel-safe, unique sheet title of at most 31 characters."""
    base = _SHEET_NAME_BAD.sub("_", name).strip("'") or "Sheet"
    base = base[:_SHEET_NAME_MAX]
    candidate, n = base, 1
    while candidate.lower() in taken:
        n += 1
        suffix = f" ({n})"
        candidate = base[:_SHEET_NAME_MAX - len(suffix)] + suffix
    taken.add(candidate.lower())
    return candidate


def export_batch(batch: BatchJob, jobs: Mapping[str, MatchingJob]) -> bytes:
    """Workbook with a summary sheet plus one sheet per successfully matched file."""
    summary = pd.DataFrame(
        [
            {
                "File Name": r.file_name,
                "Items Processed": r.item_count,
                "Average Confidence (%)": round(r.average_confidence * 100, 1),
                "Processing Time (s)": round(r.processing_seconds, 2),
                "Status": "Failed" if r.error else "Success",
            }
            for r in batch.results
        ],
        columns=SUMMARY_COLUMNS,
    )

    buffer = io.BytesIO()
    taken = {"summary"}
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        summary.to_excel(writer, sheet_name="Summary", index=False)
        for result in batch.results:
            job = jobs.get(result.job_id)
            if result.error or job is None or not job.results:
                continue
            title = sheet_name(result.file_name.rsplit(".", 1)[0], taken)
            results_frame(job.results).to_excel(writer, sheet_name=title, index=False)
    return buffer.getvalue()
