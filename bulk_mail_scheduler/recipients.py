"""Recipient list parsing helpers."""

from __future__ import annotations

import csv
import io
from typing import Iterable, List, Optional

from email_validator import EmailNotValidError, validate_email


def validated_address(value: str) -> Optional[str]:
    """Return the normalised form of ``value``, or ``None`` if it is not a valid address."""
    try:
        return validate_email(value.strip(), check_deliverability=False).normalized
    except EmailNotValidError:
        return None


def is_valid_address(value: str) -> bool:
    return validated_address(value) is not None


def normalise_recipients(values: Iterable[str]) -> List[str]:
    """Keep valid addresses, normalised, in first-seen order without duplicates."""
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            continue
        address = validated_address(value)
        if address is None or address in seen:
            continue
        seen.add(address)
        result.append(address)
    return result


def parse_recipients_csv(content: str) -> List[str]:
    """Extract every email-looking cell from CSV text (or one address per line)."""
    try:
        cells = [cell for row in csv.reader(io.StringIO(content)) for cell in row]
    except csv.Error:
        cells = content.splitlines()
    return normalise_recipients(cells)
