"""
Request bodies for the HTTP API.

Field names follow the mobile and admin clients (camelCase); bounds are
checked here so the track algorithms only ever see valid coordinates and
non-negative distances.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GPSUpdate(_ApiModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0, description="Horizontal accuracy in meters")
    speed: Optional[float] = Field(None, ge=0, description="Ground speed in mph")
    heading: Optional[float] = Field(None, ge=0, le=360)
    authority_id: Optional[str] = Field(None, alias="authorityId")
    timestamp: Optional[str] = Field(None, description="ISO timestamp of the fix; server time when absent")


class TrackSegmentBody(_ApiModel):
    subdivision_id: str = Field(..., alias="subdivisionId", min_length=1)
    track_type: str = Field(..., alias="trackType", min_length=1)
    track_number: str = Field(..., alias="trackNumber", min_length=1)
    begin_mp: float = Field(..., alias="beginMP")
    end_mp: float = Field(..., alias="endMP")


class AuthorityCreate(TrackSegmentBody):
    authority_type: Optional[str] = Field(None, alias="authorityType")
    start_time: Optional[str] = Field(None, alias="startTime")
    expiration_time: Optional[str] = Field(None, alias="expirationTime")
    employee_name: Optional[str] = Field(None, alias="employeeNameDisplay")
    employee_contact: Optional[str] = Field(None, alias="employeeContactDisplay")


class OverlapCheck(TrackSegmentBody):
    exclude_authority_id: Optional[str] = Field(None, alias="excludeAuthorityId")


class EndAuthority(_ApiModel):
    confirm_end_tracking: bool = Field(True, alias="confirmEndTracking")


class ProximityCheck(_ApiModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    max_distance: float = Field(1.0, alias="maxDistance", ge=0)


class ResolveOverlap(_ApiModel):
    notes: Optional[str] = None


class InterpolateMilepost(_ApiModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    subdivision_id: str = Field(..., alias="subdivisionId", min_length=1)
    track_type: Optional[str] = Field(None, alias="trackType")
    track_number: Optional[str] = Field(None, alias="trackNumber")


class CalculateDistance(_ApiModel):
    lat1: float = Field(..., ge=-90, le=90)
    lon1: float = Field(..., ge=-180, le=180)
    lat2: float = Field(..., ge=-90, le=90)
    lon2: float = Field(..., ge=-180, le=180)
    subdivision_id: str = Field(..., alias="subdivisionId", min_length=1)
    track_type: str = Field(..., alias="trackType", min_length=1)
    track_number: str = Field(..., alias="trackNumber", min_length=1)


class ThresholdBody(_ApiModel):
    level: str
    distance_miles: float = Field(0.0, alias="distanceMiles", ge=0)
    enabled: bool = True
    speed_mph: Optional[float] = Field(None, alias="speedMph", ge=0)
    time_minutes: Optional[float] = Field(None, alias="timeMinutes", ge=0)
    message_template: Optional[str] = Field(None, alias="messageTemplate")


class ThresholdUpdate(_ApiModel):
    thresholds: List[ThresholdBody] = Field(..., min_length=1)


class PushKeys(_ApiModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscribe(_ApiModel):
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys


class PushUnsubscribe(_ApiModel):
    endpoint: str = Field(..., min_length=1)


__all__ = [
    "AuthorityCreate",
    "CalculateDistance",
    "EndAuthority",
    "GPSUpdate",
    "InterpolateMilepost",
    "OverlapCheck",
    "ProximityCheck",
    "PushSubscribe",
    "PushUnsubscribe",
    "ResolveOverlap",
    "ThresholdBody",
    "ThresholdUpdate",
    "TrackSegmentBody",
]
