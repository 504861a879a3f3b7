from __future__ import annotations

from sqlalchemy.orm import Session

from geocheckout.errors import ApiError
from geocheckout.models import Branch
from geocheckout.services.geofence import Geofence, GeoPoint


def get_geofence(db: Session, branch_id: int) -> Geofence:
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise ApiError(status_code=404, code="BRANCH_NOT_FOUND", message="Branch not found.")
    return Geofence(
        center=GeoPoint(lat=branch.center_lat, lon=branch.center_lon),
        radius_m=branch.radius_m,
    )
