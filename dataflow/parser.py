"""
Raw tabular file parsing for imports.

Every cell is read as text; type coercion belongs to the validator.
"""

from dataclasses import dataclass
from typing import Optional
import csv
import io
import logging

import pandas as pd

from core.exceptions import ValidationFailed

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "tsv", "txt")


@dataclass(frozen=True)
class ParseOptions:
    delimiter: str = ","
    encoding: str = "utf-8"
    has_header: bool = True
    skip_rows: int = 0


def file_type_for(file_name: Optional[str]) -> str:
    """Lower-case extension of an uploaded file, validated against the supported types."""
    if not file_name:
        raise ValidationFailed("File name is required", errors=["File name is required"])
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    if extension not in SUPPORTED_FILE_TYPES:
        message = f"Unsupported file type: {extension or file_name}"
        raise ValidationFailed(message, errors=[message])
    return extension


def parse_csv(data: bytes, options: Optional[ParseOptions] = None) -> pd.DataFrame:
    """
    Parse delimited text into a frame of strings.

    Missing cells become empty strings. Files without a header row get
    generated column names column_1..column_N.

    Raises:
        ValidationFailed: undecodable bytes, malformed rows, or no columns
    """
    options = options or ParseOptions()
    if len(options.delimiter) != 1:
        raise ValidationFailed(
            "Delimiter must be a single character",
            errors=[f"Invalid delimiter: {options.delimiter!r}"]
        )

    try:
        text = data.decode(options.encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise ValidationFailed(
            f"File cannot be decoded as {options.encoding}",
            errors=[str(e)]
        )
    # BOM written by spreadsheet exports
    text = text.lstrip("\ufeff")

    try:
        frame = pd.read_csv(
            io.StringIO(text),
            sep=options.delimiter,
            header=0 if options.has_header else None,
            skiprows=options.skip_rows or None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            quoting=csv.QUOTE_MINIMAL,
        )
    except pd.errors.EmptyDataError:
        raise ValidationFailed("File is empty", errors=["File contains no columns"])
    except pd.errors.ParserError as e:
        raise ValidationFailed("File could not be parsed", errors=[str(e)])

    if options.has_header:
        frame.columns = [str(c).strip() for c in frame.columns]
    else:
        frame.columns = [f"column_{i + 1}" for i in range(len(frame.columns))]

    frame = frame.fillna("")
    logger.info(f"Parsed {len(frame)} rows x {len(frame.columns)} columns")
    return frame
