"""Turn uploaded CSV bytes into a header row plus string data rows."""
import io
import logging
from typing import List, Tuple

import pandas as pd

logger = logging.getLogger(__name__)


def read_csv_bytes(file_bytes: bytes) -> Tuple[List[str], List[List[str]]]:
    """Parse a CSV upload. Every cell comes back as a stripped string, never NaN."""
    if not file_bytes or not file_bytes.strip():
        raise ValueError("CSV file is empty")

    try:
        text = file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Exports from older spreadsheet tools
        text = file_bytes.decode("latin-1")

    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            na_filter=False,
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as e:
        raise ValueError("CSV file is empty") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Could not parse CSV: {e}") from e

    headers = [str(h).strip() for h in df.columns]
    rows = [
        [str(v).strip() for v in record]
        for record in df.itertuples(index=False, name=None)
    ]
    # Rows that are nothing but separators
    rows = [r for r in rows if any(r)]

    logger.info(f"Read CSV: {len(headers)} columns, {len(rows)} rows")
    return headers, rows
