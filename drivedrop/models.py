"""
Domain models for shipments, pickup verifications and the records around them.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ShipmentStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ASSIGNED = "assigned"
    DRIVER_EN_ROUTE = "driver_en_route"
    DRIVER_ARRIVED = "driver_arrived"
    PICKUP_VERIFICATION_PENDING = "pickup_verification_pending"
    PICKUP_VERIFIED = "pickup_verified"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED)


class Shipment(BaseModel):
    id: str
    status: ShipmentStatus
    client_id: str
    driver_id: str | None = None  # Unset until a driver is assigned
    pickup_address: str | None = None
    delivery_address: str | None = None
    estimated_price: float | None = None
    cancellation_reason: str | None = None
    client_vehicle_photos: Any = None  # Raw reference photos, see photos.py
    created_at: datetime | None = None
    updated_at: datetime | None = None


class VerificationDecision(StrEnum):
    MATCHES = "matches"
    MINOR_DIFFERENCES = "minor_differences"  # Needs client sign-off
    MAJOR_ISSUES = "major_issues"  # Held for admin resolution


class ClientResponse(StrEnum):
    APPROVED = "approved"
    DISPUTED = "disputed"


class Location(BaseModel):
    lat: float
    lng: float
    accuracy: float | None = None  # Meters

    def as_payload(self, include_accuracy: bool = False) -> dict[str, float]:
        payload = {"lat": self.lat, "lng": self.lng}
        if include_accuracy:
            payload["accuracy"] = self.accuracy or 0
        return payload


class VerificationPhoto(BaseModel):
    angle: str
    url: str


class PickupVerification(BaseModel):
    """A driver's photographic attestation of the vehicle at pickup."""

    id: str
    shipment_id: str
    driver_id: str | None = None
    driver_photos: list[VerificationPhoto] = Field(default_factory=list)
    verification_status: VerificationDecision | None = None  # None until submit
    driver_notes: str | None = None
    differences_description: str | None = None
    verification_completed_at: datetime | None = None
    client_response: ClientResponse | None = None
    client_responded_at: datetime | None = None
    client_response_notes: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.client_response is not None

    @property
    def awaiting_client(self) -> bool:
        return (
            self.verification_status == VerificationDecision.MINOR_DIFFERENCES
            and not self.is_resolved
        )

    def registered_angles(self) -> set[str]:
        return {photo.angle for photo in self.driver_photos}


class Message(BaseModel):
    id: str
    shipment_id: str
    sender_id: str
    content: str
    is_read: bool = False
    created_at: datetime
    read_at: datetime | None = None


class ApplicationStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class JobApplication(BaseModel):
    """A driver's request to be assigned to a pending shipment."""

    id: str
    shipment_id: str
    driver_id: str
    status: ApplicationStatus
    applied_at: datetime | None = None
    responded_at: datetime | None = None
    notes: str | None = None


class DriverSettings(BaseModel):
    driver_id: str
    available_for_jobs: bool = False
    updated_at: datetime | None = None


class Role(StrEnum):
    CLIENT = "client"
    DRIVER = "driver"
    ADMIN = "admin"


class Profile(BaseModel):
    id: str
    first_name: str = "User"
    last_name: str = ""
    email: str = ""
    role: Role = Role.CLIENT
    phone: str | None = None
    is_verified: bool = False
