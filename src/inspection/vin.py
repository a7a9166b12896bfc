from __future__ import annotations

import re

# 17 characters, letters I, O and Q excluded.
VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")


def normalize_vin(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().upper()
    return cleaned or None


def is_valid_vin(value: str | None) -> bool:
    vin = normalize_vin(value)
    return vin is not None and bool(VIN_PATTERN.match(vin))
