"""openpyxl-backed spreadsheet I/O: read and write cells by (row, col) only."""

from __future__ import annotations

from io import BytesIO
from typing import Any

from openpyxl import Workbook
from openpyxl import load_workbook as _openpyxl_load
from openpyxl.utils import get_column_letter

MAX_COLUMN_WIDTH = 100


class Worksheet:
    """First sheet of a workbook, addressed with 1-based (row, col) pairs."""

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook
        self._sheet = workbook.worksheets[0]

    @property
    def row_count(self) -> int:
        return self._sheet.max_row

    @property
    def column_count(self) -> int:
        return self._sheet.max_column

    def get_cell(self, row: int, col: int) -> Any:
        return self._sheet.cell(row=row, column=col).value

    def set_cell(self, row: int, col: int, value: Any) -> None:
        self._sheet.cell(row=row, column=col).value = value

    def set_hyperlink(self, row: int, col: int, url: str) -> None:
        cell = self._sheet.cell(row=row, column=col)
        cell.value = url
        cell.hyperlink = url

    def head_rows(self, count: int) -> list[list[Any]]:
        """Values of the first ``count`` rows, padded to the sheet width."""
        width = self.column_count
        return [
            [self.get_cell(row, col) for col in range(1, width + 1)]
            for row in range(1, min(count, self.row_count) + 1)
        ]

    def autosize_columns(self, max_width: int = MAX_COLUMN_WIDTH) -> None:
        for col in range(1, self.column_count + 1):
            longest = 8
            for row in range(1, self.row_count + 1):
                value = self.get_cell(row, col)
                if value is not None:
                    longest = max(longest, len(str(value)))
            self._sheet.column_dimensions[get_column_letter(col)].width = min(longest + 2, max_width)

    def to_bytes(self) -> bytes:
        buffer = BytesIO()
        self._workbook.save(buffer)
        return buffer.getvalue()


def load_workbook(data: bytes) -> Worksheet:
    """Open an .xlsx payload; raises ValueError when it has no worksheet."""
    workbook = _openpyxl_load(BytesIO(data))
    if not workbook.worksheets:
        raise ValueError("Workbook contains no worksheets")
    return Worksheet(workbook)


def write_workbook(worksheet: Worksheet) -> bytes:
    return worksheet.to_bytes()
