#!/usr/bin/env python3
"""
Selection Workbook
==================
Excel export of a published snapshot: the 12-name Selection sheet and the
Top-3 Changelog sheet (openpyxl).
"""

from datetime import datetime
from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
TITLE_FONT = Font(name="Calibri", size=14, bold=True, color="1F4E79")
DATA_FONT = Font(name="Calibri", size=10)
THIN_BORDER = Border(
    left=Side(style="thin", color="D0D0D0"),
    right=Side(style="thin", color="D0D0D0"),
    top=Side(style="thin", color="D0D0D0"),
    bottom=Side(style="thin", color="D0D0D0"),
)

ACTION_FILLS = {
    "MAINTAIN": PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
    "CAUTION": PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
    "EXIT": PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
    "REPLACE": PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
}
ROLE_FILL = {"ALPHA": PatternFill(start_color="D6E4F0", end_color="D6E4F0", fill_type="solid")}

SELECTION_COLUMNS = [
    ("Rank", lambda it: it.get("rank")),
    ("Role", lambda it: it.get("role")),
    ("Ticker", lambda it: it.get("symbol")),
    ("Price", lambda it: it.get("price")),
    ("Chg%", lambda it: it.get("changePercent")),
    ("Alpha", lambda it: it.get("alphaScore")),
    ("Power", lambda it: it.get("powerScore")),
    ("Tier", lambda it: it.get("qualityTier")),
    ("Action", lambda it: (it.get("decisionSSOT") or {}).get("action")),
    ("Conf", lambda it: (it.get("decisionSSOT") or {}).get("confidence")),
    ("Velocity", lambda it: it.get("velocity")),
    ("Options", lambda it: it.get("optionsStatus")),
    ("MaxPain", lambda it: it.get("maxPain")),
    ("PCR", lambda it: it.get("pcr")),
    ("TPG", lambda it: (it.get("tpg") or {}).get("score")),
    ("Retest", lambda it: (it.get("tpg") or {}).get("retestStatus")),
    ("Boost", lambda it: it.get("boostAmount") or None),
]

CHANGELOG_COLUMNS = ["action", "ticker", "prevRank", "newRank", "trigger",
                     "execution", "alphaScore", "tpgScore", "reason"]


def _style_header_row(ws, row, n_cols):
    for c in range(1, n_cols + 1):
        cell = ws.cell(row=row, column=c)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = THIN_BORDER


def _auto_width(ws, min_width=8, max_width=40):
    for col_cells in ws.columns:
        col_letter = get_column_letter(col_cells[0].column)
        max_len = max((len(str(c.value)) for c in col_cells if c.value is not None), default=0)
        ws.column_dimensions[col_letter].width = min(max(max_len + 2, min_width), max_width)


def write_selection_sheet(wb: Workbook, snapshot: dict):
    ws = wb.active
    ws.title = "Selection"
    ws.cell(row=1, column=1, value="ALPHA SELECTION 3 / 7 / 2").font = TITLE_FONT
    sel = snapshot.get("selection", {})
    ws.cell(row=2, column=1, value=(
        f"Run {snapshot.get('runId')}  |  mode {snapshot.get('mode')}  |  "
        f"{sel.get('total', 0)} items  |  options {snapshot.get('optionsStatus', {}).get('status')}"
    )).font = Font(name="Calibri", size=10, italic=True, color="666666")

    hdr = 4
    for c, (name, _) in enumerate(SELECTION_COLUMNS, 1):
        ws.cell(row=hdr, column=c, value=name)
    _style_header_row(ws, hdr, len(SELECTION_COLUMNS))

    for r, item in enumerate(snapshot.get("items", []), hdr + 1):
        action = (item.get("decisionSSOT") or {}).get("action")
        for c, (name, get) in enumerate(SELECTION_COLUMNS, 1):
            cell = ws.cell(row=r, column=c, value=get(item))
            cell.font = DATA_FONT
            cell.border = THIN_BORDER
            cell.alignment = Alignment(horizontal="center")
            if name == "Action" and action in ACTION_FILLS:
                cell.fill = ACTION_FILLS[action]
            elif item.get("role") in ROLE_FILL:
                cell.fill = ROLE_FILL[item["role"]]
    ws.freeze_panes = ws.cell(row=hdr + 1, column=1)
    _auto_width(ws)
    return ws


def write_changelog_sheet(wb: Workbook, snapshot: dict):
    ws = wb.create_sheet("Changelog")
    for c, name in enumerate(CHANGELOG_COLUMNS, 1):
        ws.cell(row=1, column=c, value=name)
    _style_header_row(ws, 1, len(CHANGELOG_COLUMNS))
    entries = snapshot.get("changelog") or []
    if not entries:
        ws.cell(row=2, column=1, value="No Change (Top-3 held)").font = DATA_FONT
    for r, entry in enumerate(entries, 2):
        for c, name in enumerate(CHANGELOG_COLUMNS, 1):
            cell = ws.cell(row=r, column=c, value=entry.get(name))
            cell.font = DATA_FONT
            cell.border = THIN_BORDER
    _auto_width(ws)
    return ws


def write_selection_workbook(snapshot: dict, path: str | Path) -> str:
    """Write the snapshot to an .xlsx file and return its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    write_selection_sheet(wb, snapshot)
    write_changelog_sheet(wb, snapshot)
    wb.properties.created = datetime.now()
    wb.save(str(path))
    return str(path)
