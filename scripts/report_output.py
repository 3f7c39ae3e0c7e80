"""CSV and console-table rendering for the report scripts."""

import csv
import io
import json
import sys


def cell_text(value):
    """Text for one cell: blank for None, JSON for dicts and lists."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def to_csv(header, rows):
    """Encode a header plus one line per row. Cells containing commas are quoted."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([cell_text(cell) for cell in row])
    return buf.getvalue()


def write_csv(path, header, rows):
    """Write CSV text to `path`; returns the number of data rows written."""
    rows = list(rows)
    with open(path, "w", newline="") as f:
        f.write(to_csv(header, rows))
    return len(rows)


def records_to_rows(records, columns):
    """Project dict records onto `columns`, leaving absent cells blank."""
    return [[record.get(col, "") for col in columns] for record in records]


def table_columns(records):
    columns = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    return columns


def format_table(records, columns=None):
    """Render dict records as a fixed-width text table."""
    columns = list(columns) if columns else table_columns(records)
    if not columns:
        return ""
    cells = [[cell_text(record.get(col)) for col in columns] for record in records]
    widths = [len(col) for col in columns]
    for row in cells:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    def line(values):
        return "  ".join(v.ljust(w) for v, w in zip(values, widths)).rstrip()

    lines = [line(columns), line(["-" * w for w in widths])]
    lines.extend(line(row) for row in cells)
    return "\n".join(lines)


def print_table(records, columns=None, out=None):
    out = out or sys.stdout
    text = format_table(records, columns)
    if text:
        print(text, file=out)
