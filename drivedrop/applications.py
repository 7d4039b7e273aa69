import logging
from datetime import UTC, datetime

from drivedrop.backend import BackendClient, eq, is_null
from drivedrop.errors import DataIntegrityWarning, ShipmentUnavailableError
from drivedrop.models import (
    ApplicationStatus,
    JobApplication,
    Shipment,
    ShipmentStatus,
)

logger = logging.getLogger(__name__)

_INVALID_IDS = {"", "null", "undefined"}


def _check_id(value: str | None, label: str) -> str:
    if value is None or value in _INVALID_IDS:
        raise ValueError(f"Invalid {label} ID provided")
    return value


async def list_applications(
    backend: BackendClient, shipment_id: str
) -> list[JobApplication]:
    rows = await backend.select(
        "job_applications", {"shipment_id": eq(shipment_id)}, order="applied_at.asc"
    )
    return [JobApplication.model_validate(row) for row in rows]


async def apply_for_shipment(
    backend: BackendClient, shipment_id: str, driver_id: str
) -> JobApplication:
    """
    File a driver's application for a pending shipment.

    Raises ShipmentUnavailableError if the shipment was taken or the driver
    already applied, and DataIntegrityWarning if the new application cannot be
    read back.
    """
    shipment_id = _check_id(shipment_id, "shipment")
    driver_id = _check_id(driver_id, "driver")

    existing = await backend.select_one(
        "job_applications",
        {"shipment_id": eq(shipment_id), "driver_id": eq(driver_id)},
    )
    if existing is not None:
        raise ShipmentUnavailableError("You have already applied for this shipment")

    row = await backend.select_one("shipments", {"id": eq(shipment_id)})
    if row is None:
        raise ShipmentUnavailableError("Shipment not found")
    shipment = Shipment.model_validate(row)
    if shipment.driver_id is not None:
        raise ShipmentUnavailableError(
            "This shipment has already been assigned to another driver"
        )
    if shipment.status != ShipmentStatus.PENDING:
        raise ShipmentUnavailableError()

    await backend.insert(
        "job_applications",
        {
            "shipment_id": shipment_id,
            "driver_id": driver_id,
            "status": ApplicationStatus.PENDING.value,
            "applied_at": datetime.now(UTC).isoformat(),
        },
    )

    stored = await backend.select_one(
        "job_applications",
        {"shipment_id": eq(shipment_id), "driver_id": eq(driver_id)},
    )
    if stored is None:
        logger.warning(
            "Application by %s for shipment %s did not persist", driver_id, shipment_id
        )
        raise DataIntegrityWarning(
            "Your application may not have been saved. Please try again."
        )
    logger.info("Driver %s applied for shipment %s", driver_id, shipment_id)
    return JobApplication.model_validate(stored)


async def respond_to_application(
    backend: BackendClient, application_id: str, status: ApplicationStatus
) -> JobApplication:
    """Accept or reject an application; accepting assigns the driver."""
    if status == ApplicationStatus.PENDING:
        raise ValueError("An application can only be accepted or rejected")

    row = await backend.select_one("job_applications", {"id": eq(application_id)})
    if row is None:
        raise ShipmentUnavailableError("Application not found")
    application = JobApplication.model_validate(row)

    if status == ApplicationStatus.ACCEPTED:
        assigned = await backend.update(
            "shipments",
            {"id": eq(application.shipment_id), "driver_id": is_null()},
            {
                "driver_id": application.driver_id,
                "status": ShipmentStatus.ASSIGNED.value,
                "updated_at": datetime.now(UTC).isoformat(),
            },
        )
        if not assigned:
            raise ShipmentUnavailableError(
                "Shipment was assigned to another driver just now."
            )

    rows = await backend.update(
        "job_applications",
        {"id": eq(application_id)},
        {"status": status.value, "responded_at": datetime.now(UTC).isoformat()},
    )
    if not rows:
        raise DataIntegrityWarning("The application update did not persist.")
    logger.info("Application %s %s", application_id, status)
    return JobApplication.model_validate(rows[0])
