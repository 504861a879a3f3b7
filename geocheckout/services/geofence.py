"""Pure geofence classification of a single location sample.

Nothing here reads the clock or the database; callers pass the sample age and
the thresholds in, which keeps every rule testable with fixed numbers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from math import asin, cos, radians, sin, sqrt

from geocheckout.models import Classification, PermissionState

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class Geofence:
    center: GeoPoint
    radius_m: float


@dataclass(frozen=True, slots=True)
class ClassifyThresholds:
    max_accuracy_m: float
    staleness: timedelta


@dataclass(frozen=True, slots=True)
class Evaluation:
    classification: Classification
    gps_ok: bool
    distance_m: float | None = None
    unreliable_accuracy: bool = False

    @property
    def in_branch(self) -> bool:
        return self.classification == Classification.OK


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return EARTH_RADIUS_M * c


def evaluate(
    point: GeoPoint | None,
    accuracy_m: float | None,
    permission_state: PermissionState,
    last_sample_age: timedelta,
    geofence: Geofence,
    thresholds: ClassifyThresholds,
) -> Evaluation:
    if (
        permission_state != PermissionState.GRANTED
        or last_sample_age > thresholds.staleness
        or point is None
    ):
        return Evaluation(classification=Classification.LOCATION_DISABLED, gps_ok=False)

    distance_value = distance_m(geofence.center.lat, geofence.center.lon, point.lat, point.lon)

    # A missing accuracy value is taken at face value.
    unreliable = accuracy_m is not None and accuracy_m > thresholds.max_accuracy_m
    if unreliable:
        return Evaluation(
            classification=Classification.OK,
            gps_ok=False,
            distance_m=distance_value,
            unreliable_accuracy=True,
        )

    if distance_value > geofence.radius_m:
        return Evaluation(
            classification=Classification.OUT_OF_BRANCH,
            gps_ok=True,
            distance_m=distance_value,
        )

    return Evaluation(classification=Classification.OK, gps_ok=True, distance_m=distance_value)


def classify(
    point: GeoPoint | None,
    accuracy_m: float | None,
    permission_state: PermissionState,
    last_sample_age: timedelta,
    branch_center: GeoPoint,
    branch_radius_m: float,
    thresholds: ClassifyThresholds,
) -> Classification:
    return evaluate(
        point,
        accuracy_m,
        permission_state,
        last_sample_age,
        Geofence(center=branch_center, radius_m=branch_radius_m),
        thresholds,
    ).classification
