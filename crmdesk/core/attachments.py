import io
import logging
from datetime import date, datetime
from typing import Any, List, Sequence

from openpyxl import load_workbook

logger = logging.getLogger(__name__)

MAX_ROWS_PER_SHEET = 200
MAX_SHEET_NAME = 80
EXCEL_EXTENSIONS = ('.xlsx', '.xlsm', '.xls')


def is_excel_attachment(file_name: str, mime_type: str = '') -> bool:
    name = (file_name or '').lower()
    mime = (mime_type or '').lower()
    if name.endswith(EXCEL_EXTENSIONS):
        return True
    return 'spreadsheet' in mime or 'excel' in mime


def sanitize_sheet_name(name: str) -> str:
    value = (name or '').strip()
    if not value:
        return 'Sheet'
    return value[:MAX_SHEET_NAME]


def _cell_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).replace('\r\n', ' ').replace('\n', ' ')
    return text.replace('|', '\\|').strip()


def rows_to_markdown_table(rows: Sequence[Sequence[Any]]) -> str:
    """
    Serialize a matrix as a Markdown pipe table; the first row is the header.
    Short rows are padded so every row has the same width.
    """
    if not rows:
        return ''
    width = max(len(row) for row in rows)
    if width == 0:
        return ''

    def line(cells: List[str]) -> str:
        return '| ' + ' | '.join(cells) + ' |'

    matrix = [[_cell_text(v) for v in row] + [''] * (width - len(row)) for row in rows]
    out = [line(matrix[0]), line(['---'] * width)]
    out.extend(line(row) for row in matrix[1:])
    return '\n'.join(out)


def extract_excel_markdown(content: bytes, file_name: str) -> str:
    """
    Turn every sheet of a workbook into a Markdown table for prompt context.
    Returns an empty string when the workbook holds no usable rows.
    """
    workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    sections = []
    try:
        for sheet in workbook.worksheets:
            rows = []
            for row in sheet.iter_rows(values_only=True):
                if all(v is None or (isinstance(v, str) and not v.strip()) for v in row):
                    continue
                rows.append(list(row))
                if len(rows) >= MAX_ROWS_PER_SHEET:
                    break
            if not rows:
                continue
            sections.append(f"### {sanitize_sheet_name(sheet.title)}\n\n{rows_to_markdown_table(rows)}")
    finally:
        workbook.close()

    logger.debug(f"Extracted {len(sections)} sheets from {file_name}")
    if not sections:
        return ''
    return f"## Attachment data: {file_name}\n\n" + '\n\n'.join(sections)
