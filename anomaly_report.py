# anomaly_report.py
"""Excel export of a shared result: a Summary sheet and an All Anomalies sheet."""
import re
from datetime import datetime
from io import BytesIO
from typing import Optional

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from db import Anomaly, utcnow
from share_service import ShareGrant

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

ANOMALY_HEADERS = ["Task Name", "Priority", "Status", "Progress %", "Date Detected", "Type",
                   "Description", "P90 Value", "Week Before P90", "Notes"]
ANOMALY_COLUMN_WIDTHS = [25, 10, 10, 12, 15, 20, 40, 12, 15, 50]
SUMMARY_COLUMN_WIDTHS = [20, 30]

PRIORITY_BY_TYPE = {"p50_median_spike": "High", "p10_consecutive_low": "Medium"}
PROGRESS_BY_TYPE = {"p50_median_spike": 25, "p10_consecutive_low": 50}


def anomaly_priority(anomaly_type: str) -> str:
    return PRIORITY_BY_TYPE.get(anomaly_type, "Low")


def anomaly_progress(anomaly_type: str) -> int:
    return PROGRESS_BY_TYPE.get(anomaly_type, 10)


def humanize_type(anomaly_type: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), anomaly_type.replace("_", " "))


def _fixed(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "N/A"


def anomaly_row(index: int, anomaly: Anomaly) -> list:
    return [
        f"Anomaly {index}: {anomaly.detected_date}",
        anomaly_priority(anomaly.anomaly_type),
        "Open",
        anomaly_progress(anomaly.anomaly_type),
        anomaly.detected_date,
        humanize_type(anomaly.anomaly_type),
        anomaly.description,
        _fixed(anomaly.p90_value),
        _fixed(anomaly.week_before_value),
        anomaly.openai_analysis or "No AI analysis available",
    ]


def _set_widths(ws, widths):
    for index, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(index)].width = width


def build_shared_report(grant: ShareGrant, now: Optional[datetime] = None) -> bytes:
    now = now or utcnow()
    upload, anomalies = grant.upload, grant.anomalies
    shared_by = f"{grant.owner.first_name or ''} {grant.owner.last_name or ''}".strip()

    wb = Workbook()
    summary = wb.active
    summary.title = "Summary"
    for row in (
        ["Shared Anomaly Analysis Report"], [""],
        ["Upload Information"],
        ["File Name", upload.filename],
        ["Upload Date", upload.uploaded_at.strftime("%Y-%m-%d")],
        ["Total Rows", upload.row_count],
        ["Total Columns", upload.column_count],
        [""],
        ["Anomaly Statistics"],
        ["Total Anomalies", len(anomalies)],
        ["P50 Median Spikes", sum(1 for a in anomalies if a.anomaly_type == "p50_median_spike")],
        ["P10 Consecutive Lows", sum(1 for a in anomalies if a.anomaly_type == "p10_consecutive_low")],
        [""],
        ["Sharing Information"],
        ["Shared By", shared_by],
        ["Shared Date", grant.shared.created_at.strftime("%Y-%m-%d %H:%M:%S")],
        ["Downloaded Date", now.strftime("%Y-%m-%d %H:%M:%S")],
    ):
        summary.append(row)
    _set_widths(summary, SUMMARY_COLUMN_WIDTHS)

    sheet = wb.create_sheet("All Anomalies")
    sheet.append(ANOMALY_HEADERS)
    for index, anomaly in enumerate(anomalies, start=1):
        sheet.append(anomaly_row(index, anomaly))
    _set_widths(sheet, ANOMALY_COLUMN_WIDTHS)

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def report_filename(grant: ShareGrant, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    stem = re.sub(r"\.csv$", "", grant.upload.filename, flags=re.IGNORECASE)
    return f"shared-anomaly-export-{stem}-{now.strftime('%Y-%m-%d')}.xlsx"
