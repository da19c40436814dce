"""
File reading collaborator for Event Import Pipeline

Reads row ranges from parsed import files, the header row providing the keys
of each row dict. Delimited text is streamed with the standard ``csv`` module
and reading stops once the requested page is complete; workbooks are read a
page at a time through pandas (openpyxl for ``.xlsx``, xlrd for ``.xls``).
"""

import asyncio
import csv
import itertools
import math
import os
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, TextIO

import pandas as pd

from ..core.exceptions import UnsupportedFileTypeError

CSV_EXTENSIONS = {".csv", ".txt", ".tsv"}
EXCEL_ENGINES = {".xlsx": "openpyxl", ".xls": "xlrd"}

SNIFF_SAMPLE_SIZE = 4096


def _extension(file_path: str) -> str:
    return os.path.splitext(file_path)[1].lower()


def _check_supported(file_path: str, sheet_index: int) -> str:
    extension = _extension(file_path)
    if extension in CSV_EXTENSIONS and sheet_index == 0:
        return extension
    if extension in EXCEL_ENGINES and sheet_index >= 0:
        return extension
    raise UnsupportedFileTypeError(file_path)


# Delimited text

def _sniff_delimiter(sample: str, extension: str) -> str:
    if extension == ".tsv":
        return "\t"
    try:
        return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _iter_csv_rows(f: TextIO, extension: str) -> Iterator[Dict[str, Any]]:
    """Yield non-blank rows; rows made only of empty cells do not count."""
    sample = f.read(SNIFF_SAMPLE_SIZE)
    f.seek(0)
    reader = csv.DictReader(f, delimiter=_sniff_delimiter(sample, extension))
    for record in reader:
        row = {key.strip(): value for key, value in record.items() if key is not None}
        if any(value not in (None, "") for value in row.values()):
            yield row


def _open_text(file_path: str) -> TextIO:
    return open(file_path, "r", encoding="utf-8-sig", newline="")


def _read_csv_page(file_path: str, extension: str, start_row: int, limit: int) -> List[Dict[str, Any]]:
    with _open_text(file_path) as f:
        return list(itertools.islice(_iter_csv_rows(f, extension), start_row, start_row + limit))


def _count_csv_rows(file_path: str, extension: str) -> int:
    with _open_text(file_path) as f:
        return sum(1 for _ in _iter_csv_rows(f, extension))


# Workbooks

def _cell(value: Any) -> Any:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    return value


def _read_excel_frame(file_path: str, extension: str, sheet_index: int,
                      start_row: int = 0, limit: Optional[int] = None) -> pd.DataFrame:
    return pd.read_excel(
        file_path,
        sheet_name=sheet_index,
        header=0,
        skiprows=range(1, start_row + 1) if start_row else None,
        nrows=limit,
        dtype=object,
        engine=EXCEL_ENGINES[extension],
    )


def _read_excel_page(file_path: str, extension: str, sheet_index: int,
                     start_row: int, limit: int) -> List[Dict[str, Any]]:
    frame = _read_excel_frame(file_path, extension, sheet_index, start_row, limit)
    columns = [str(column).strip() for column in frame.columns]
    return [
        {column: _cell(value) for column, value in zip(columns, values)}
        for values in frame.itertuples(index=False, name=None)
    ]


def _count_excel_rows(file_path: str, extension: str, sheet_index: int) -> int:
    return len(_read_excel_frame(file_path, extension, sheet_index))


async def read_batch_from_file(file_path: str, sheet_index: int = 0,
                               start_row: int = 0, limit: int = 1000) -> List[Dict[str, Any]]:
    """
    Read ``limit`` data rows starting at ``start_row`` (0-based, header excluded).

    Args:
        file_path: Path to the parsed import file
        sheet_index: Worksheet index; delimited text only has sheet 0
        start_row: First data row to return
        limit: Maximum number of rows

    Returns:
        List of row dicts, empty once past the end of the file

    Raises:
        UnsupportedFileTypeError: For formats other than delimited text and workbooks
    """
    extension = _check_supported(file_path, sheet_index)
    if extension in CSV_EXTENSIONS:
        return await asyncio.to_thread(_read_csv_page, file_path, extension, start_row, limit)
    return await asyncio.to_thread(_read_excel_page, file_path, extension, sheet_index, start_row, limit)


async def count_rows(file_path: str, sheet_index: int = 0) -> int:
    """Number of data rows in the file (non-blank rows for delimited text)."""
    extension = _check_supported(file_path, sheet_index)
    if extension in CSV_EXTENSIONS:
        return await asyncio.to_thread(_count_csv_rows, file_path, extension)
    return await asyncio.to_thread(_count_excel_rows, file_path, extension, sheet_index)
