from __future__ import annotations

import csv
import io
from typing import List, Optional, Tuple, Union

from csvpay.config import settings
from csvpay.services.models import InvalidPaymentRow, PaymentRequest


class CsvFormatError(ValueError):
    def __init__(self, message: str, row_errors: Optional[List[Tuple[int, str]]] = None) -> None:
        super().__init__(message)
        self.row_errors = row_errors or []


def _decode(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data.lstrip("\ufeff")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise CsvFormatError("File is not valid UTF-8 text") from None


def parse_payments_csv(data: Union[bytes, str], *, max_rows: Optional[int] = None) -> List[PaymentRequest]:
    """Parse ``payee,amount,wallet`` rows; the first row is a header and is skipped.

    Every invalid row is reported at once in ``CsvFormatError.row_errors`` as
    ``(line_number, reason)`` pairs.
    """
    limit = max_rows if max_rows is not None else settings.csv_max_rows
    reader = csv.reader(io.StringIO(_decode(data)))

    header_seen = False
    requests: List[PaymentRequest] = []
    errors: List[Tuple[int, str]] = []
    for row in reader:
        line = reader.line_num
        if not any(cell.strip() for cell in row):
            continue
        if not header_seen:
            header_seen = True
            continue
        if len(row) < 3:
            errors.append((line, f"expected 3 columns, got {len(row)}"))
            continue
        try:
            requests.append(PaymentRequest.create(row[0], row[1], row[2]))
        except InvalidPaymentRow as e:
            errors.append((line, str(e)))

    if errors:
        raise CsvFormatError(f"{len(errors)} invalid row(s) in CSV", errors)
    if not requests:
        raise CsvFormatError("CSV contains no payment rows")
    if limit and len(requests) > limit:
        raise CsvFormatError(f"CSV has {len(requests)} rows; the limit is {limit}")
    return requests
