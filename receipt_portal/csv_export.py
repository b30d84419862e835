"""
CSV serialization of claim rows for the admin export.
"""

from __future__ import annotations

import csv
import io
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

CLAIM_CSV_HEADERS = [
    "Date",
    "Participant",
    "Condo",
    "Vehicle",
    "Operator",
    "Amount",
    "Rebate Rate",
    "Rebate Amount",
    "Status",
]


def _format_number(value: Any) -> Any:
    # 100.0 is written as 100, matching how the portal front-end prints amounts
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def format_rebate_rate(rate: Any) -> str:
    """Render a 0-1 fraction as a whole percentage, e.g. 0.15 -> "15%".

    Halves round up (0.125 -> "13%"), as the portal front-end does.
    """
    if rate is None or rate == "":
        return ""
    percent = Decimal(float(rate) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return f"{percent}%"


def claims_to_csv(claims: Iterable[dict]) -> str:
    """
    Serialize rows of the claims_with_details view.
    Rows keep their input order; lines end with "\\n" and there is no
    trailing newline. Fields containing commas, quotes or newlines are quoted.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CLAIM_CSV_HEADERS)
    for claim in claims:
        writer.writerow(
            [
                claim.get("charge_date"),
                claim.get("participant_name"),
                claim.get("condo_name"),
                claim.get("vehicle_number"),
                claim.get("operator"),
                _format_number(claim.get("amount")),
                format_rebate_rate(claim.get("rebate_rate")),
                _format_number(claim.get("rebate_amount")),
                claim.get("status"),
            ]
        )
    return buffer.getvalue()[:-1]
