from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import date, datetime

from app.hbx.utils import parse_bool


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y")


def _get(row: dict[str, str], *names: str) -> str:
    for n in names:
        if n in row and row[n] is not None:
            return str(row[n]).strip()
    return ""


def _parse_date(value: str) -> date:
    value = (value or "").strip()
    if not value:
        raise ValueError("missing")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"{value!r} is not a date (YYYY-MM-DD or MM/DD/YYYY)")


def parse_census_csv(file_bytes: bytes) -> tuple[list[dict], list[CsvRowError]]:
    """
    Parse an employer census roster upload.

    Expected headers (a few common variants are accepted):
    - First Name
    - Last Name
    - Date of Birth (or DOB)
    - Hire Date (or Date of Hire)

    Optional headers:
    - SSN (last 4 digits are kept), Email, Business Owner (yes/no)

    Returns:
      (rows, errors)
    Where each row is a dict suitable for service.create_census_employee().
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")

    rows: list[dict] = []
    errors: list[CsvRowError] = []

    for idx, raw in enumerate(reader, start=2):  # 1 = header
        if not raw or all((v or "").strip() == "" for v in raw.values()):
            continue

        first_name = _get(raw, "First Name", "FirstName", "first_name")
        last_name = _get(raw, "Last Name", "LastName", "last_name")
        if not first_name or not last_name:
            errors.append(CsvRowError(idx, "First Name and Last Name are required."))
            continue

        try:
            dob = _parse_date(_get(raw, "Date of Birth", "DOB", "dob"))
        except ValueError as e:
            errors.append(CsvRowError(idx, f"Invalid Date of Birth: {e}"))
            continue

        try:
            hired_on = _parse_date(_get(raw, "Hire Date", "Date of Hire", "hired_on"))
        except ValueError as e:
            errors.append(CsvRowError(idx, f"Invalid Hire Date: {e}"))
            continue

        if hired_on <= dob:
            errors.append(CsvRowError(idx, "Hire Date must be after Date of Birth."))
            continue

        ssn = "".join(ch for ch in _get(raw, "SSN", "ssn") if ch.isdigit())
        if ssn and len(ssn) not in (4, 9):
            errors.append(CsvRowError(idx, "Invalid SSN. Expected 9 digits (or the last 4)."))
            continue

        rows.append(
            {
                "first_name": first_name,
                "last_name": last_name,
                "dob": dob,
                "hired_on": hired_on,
                "ssn_last4": ssn[-4:] if ssn else None,
                "email": _get(raw, "Email", "email") or None,
                "is_business_owner": parse_bool(_get(raw, "Business Owner", "Owner", "is_business_owner")),
            }
        )

    return rows, errors
