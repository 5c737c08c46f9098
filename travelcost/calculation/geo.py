"""
geo.py: Distance calculator.

Ellipsoidal geodesic on WGS84 via pyproj (GeographicLib under the hood), the
same model PostGIS uses for ST_Distance on geography columns. Results from a
different geodesic library agree only to the rounded precision, never bit for bit.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from pyproj import Geod

from travelcost.calculation.schemas import GeoPoint, check_coordinates

DISTANCE_QUANTUM = Decimal("0.001")   # 3 decimal places, i.e. whole metres

_GEOD = Geod(ellps="WGS84")


def round_distance(value: Decimal) -> Decimal:
    return value.quantize(DISTANCE_QUANTUM, rounding=ROUND_HALF_UP)


def distance_km(a: GeoPoint, b: GeoPoint) -> Decimal:
    """
    Geodesic distance between two points in kilometres, rounded to 3 places.

    Points are re-checked here because GeoPoint.model_construct() skips validation.
    Raises InvalidCoordinate for out-of-range input.
    """
    check_coordinates(a.latitude, a.longitude)
    check_coordinates(b.latitude, b.longitude)
    if a.latitude == b.latitude and a.longitude == b.longitude:
        return Decimal("0.000")
    # pyproj takes lon/lat order
    _, _, metres = _GEOD.inv(a.longitude, a.latitude, b.longitude, b.latitude)
    return round_distance(Decimal(str(float(metres))) / 1000)
