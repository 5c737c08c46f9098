"""
fingerprint.py: Cache keys derived from the physical inputs of a calculation.

Canonical form (one line, '|' separated):
    travel|v1|{rule_version}|{home lat,lon}|{site lat,lon}|{cost_per_km}|{days_per_week}

  - Coordinates are formatted to 7 decimals (~1 cm), so float noise from
    different lookup paths cannot split one physical location into two keys.
  - cost_per_km is normalised to 2 decimals: Decimal("0.7") and "0.70" are one key.
  - The key is the SHA-256 hex digest of the canonical form.

canonical_location() and canonical_rate() return the values the key is built
from. The service computes with exactly those values, so every input that maps
to one fingerprint also maps to one result.

The fingerprint is a hash of VALUES, never of ids. A changed address or rate
therefore yields a new fingerprint: a guaranteed miss, never a stale hit.
"""
from __future__ import annotations

import hashlib
from decimal import Decimal

from travelcost.calculation.allowance import RULE_VERSION, round_money, to_decimal
from travelcost.calculation.schemas import GeoPoint

FINGERPRINT_VERSION = "v1"
COORDINATE_PLACES = 7


def canonical_point(point: GeoPoint) -> str:
    return f"{point.latitude:.{COORDINATE_PLACES}f},{point.longitude:.{COORDINATE_PLACES}f}"


def canonical_location(point: GeoPoint) -> GeoPoint:
    """point snapped to the fingerprint's coordinate grid."""
    return GeoPoint(
        latitude=float(f"{point.latitude:.{COORDINATE_PLACES}f}"),
        longitude=float(f"{point.longitude:.{COORDINATE_PLACES}f}"),
    )


def canonical_rate(cost_per_km: Decimal) -> Decimal:
    return round_money(to_decimal(cost_per_km, "cost_per_km"))


def travel_fingerprint(
    home: GeoPoint,
    site: GeoPoint,
    cost_per_km: Decimal,
    days_per_week: int,
    rule_version: str = RULE_VERSION,
) -> str:
    canonical = "|".join((
        "travel",
        FINGERPRINT_VERSION,
        rule_version,
        canonical_point(home),
        canonical_point(site),
        f"{canonical_rate(cost_per_km):.2f}",
        str(days_per_week),
    ))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
