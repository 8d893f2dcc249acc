"""Tab-separated table handling for the integration step.

The integration prompt asks the model for a TSV table whose header row is a
fixed set of column names. Hypothesis fields are mapped from those headers
by exact string match; every column is also kept in full_data.
"""

from typing import Any

from asip.contracts.schemas import Hypothesis

# =============================================================================
# Column Schema
# =============================================================================

COL_TITLE = "Hypothesis Title"
COL_INDUSTRY = "Industry"
COL_FIELD = "Field"
COL_SUMMARY = "Business Summary"
COL_CUSTOMER_PROBLEM = "Customer Problem"
COL_SCIENTIFIC_JUDGMENT = "Scientific Judgment"
COL_SCIENTIFIC_SCORE = "Scientific Score"
COL_STRATEGIC_JUDGMENT = "Strategic Judgment"
COL_STRATEGIC_WIN_LEVEL = "Strategic Win Level"
COL_CATCHUP_SCORE = "Catch-up Score"
COL_TOTAL_SCORE = "Total Score"

STEP5_COLUMNS = [
    COL_TITLE,
    COL_INDUSTRY,
    COL_FIELD,
    COL_SUMMARY,
    COL_CUSTOMER_PROBLEM,
    COL_SCIENTIFIC_JUDGMENT,
    COL_SCIENTIFIC_SCORE,
    COL_STRATEGIC_JUDGMENT,
    COL_STRATEGIC_WIN_LEVEL,
    COL_CATCHUP_SCORE,
    COL_TOTAL_SCORE,
]

# column -> (Hypothesis attribute, numeric?)
_COLUMN_FIELDS: dict[str, tuple[str, bool]] = {
    COL_TITLE: ("title", False),
    COL_INDUSTRY: ("industry", False),
    COL_FIELD: ("field", False),
    COL_SUMMARY: ("business_summary", False),
    COL_CUSTOMER_PROBLEM: ("customer_problem", False),
    COL_SCIENTIFIC_JUDGMENT: ("scientific_judgment", False),
    COL_SCIENTIFIC_SCORE: ("scientific_score", True),
    COL_STRATEGIC_JUDGMENT: ("strategic_judgment", False),
    COL_STRATEGIC_WIN_LEVEL: ("strategic_win_level", False),
    COL_CATCHUP_SCORE: ("catchup_score", True),
    COL_TOTAL_SCORE: ("total_score", True),
}


# =============================================================================
# Parsing
# =============================================================================


def _table_lines(text: str) -> list[str]:
    lines = []
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        # A line of tabs is a row of empty cells
        if "\t" not in line and not line.strip():
            continue
        if line.strip().startswith("```"):
            continue
        lines.append(line)
    return lines


def parse_delimited_table(text: str) -> list[dict[str, str]]:
    """Parse tab-separated text into one mapping per data row.

    The first non-empty line is the header. Short rows are padded with
    empty strings; cells past the last header column are dropped.
    """
    lines = _table_lines(text)
    if not lines:
        return []

    headers = [cell.strip() for cell in lines[0].split("\t")]
    rows = []
    for line in lines[1:]:
        cells = [cell.strip() for cell in line.split("\t")]
        rows.append(
            {header: (cells[i] if i < len(cells) else "") for i, header in enumerate(headers)}
        )
    return rows


def rows_to_text(rows: list[dict[str, str]], columns: list[str] | None = None) -> str:
    """Render rows back into tab-separated text, header first."""
    if columns is None:
        columns = list(rows[0].keys()) if rows else list(STEP5_COLUMNS)
    lines = ["\t".join(columns)]
    for row in rows:
        lines.append("\t".join(row.get(column, "") for column in columns))
    return "\n".join(lines)


def merge_tables(texts: list[str]) -> str:
    """Concatenate several TSV outputs under the header of the first one."""
    header: list[str] | None = None
    rows: list[dict[str, str]] = []
    for text in texts:
        lines = _table_lines(text)
        if not lines:
            continue
        if header is None:
            header = [cell.strip() for cell in lines[0].split("\t")]
        rows.extend(parse_delimited_table(text))
    if header is None:
        return ""
    return rows_to_text(rows, header)


# =============================================================================
# Mapping
# =============================================================================


def _to_score(value: str) -> float | None:
    try:
        return float(value.replace(",", "").rstrip("%").strip())
    except ValueError:
        return None


def rows_to_hypotheses(
    rows: list[dict[str, str]],
    project_id: str,
    run_id: str | None,
    start_number: int,
    target_spec_id: str | None = None,
    technical_assets_id: str | None = None,
    loop: int | None = None,
) -> list[Hypothesis]:
    """Map parsed rows to Hypothesis records numbered from start_number."""
    hypotheses = []
    for offset, row in enumerate(rows):
        values: dict[str, Any] = {}
        for column, (attr, numeric) in _COLUMN_FIELDS.items():
            raw = row.get(column)
            if raw is None or raw == "":
                values[attr] = None
            elif numeric:
                values[attr] = _to_score(raw)
            else:
                values[attr] = raw
        hypotheses.append(
            Hypothesis(
                project_id=project_id,
                run_id=run_id,
                target_spec_id=target_spec_id,
                technical_assets_id=technical_assets_id,
                hypothesis_number=start_number + offset,
                loop=loop,
                full_data=dict(row),
                **values,
            )
        )
    return hypotheses
