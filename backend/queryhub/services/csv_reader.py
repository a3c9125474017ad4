import io
from dataclasses import dataclass
from typing import List, Optional, Union

import pandas as pd

from ..core.errors import MalformedInputError


@dataclass
class CsvTable:
    header: List[Optional[str]]
    rows: List[List[Optional[str]]]

    @property
    def width(self) -> int:
        return len(self.header)

    def to_csv(self) -> str:
        """Header plus rows as CSV text; nulls become unquoted empty fields."""
        df = pd.DataFrame(self.rows, columns=self.header)
        return df.to_csv(index=False, header=True, na_rep="", lineterminator="\n")


def decode_contents(contents: Union[bytes, str]) -> str:
    if isinstance(contents, str):
        return contents
    try:
        return contents.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedInputError(f"File is not valid UTF-8: {e}") from e


def _cell(value) -> Optional[str]:
    # whitespace-only cells are null, same as empty ones
    if pd.isna(value) or not value.strip():
        return None
    return value


def read_csv(contents: Union[bytes, str]) -> CsvTable:
    """
    Parse delimited text with a header row.

    Every cell is read as text (or None when blank) so the type inference
    engine and the bulk loader see exactly the same values.
    """
    text = decode_contents(contents)

    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            dtype=str,
            keep_default_na=False,
            na_values=[""],
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as e:
        raise MalformedInputError("File is empty") from e
    except pd.errors.ParserError as e:
        raise MalformedInputError(f"Malformed CSV: {e}") from e

    records = [[_cell(v) for v in row] for row in df.itertuples(index=False, name=None)]
    if not records:
        raise MalformedInputError("File is empty")

    header = records[0]
    return CsvTable(header=header, rows=records[1:])
