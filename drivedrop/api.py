"""
Local emulator of the DriveDrop backend.

Serves the verification REST API together with the table, RPC, storage and
auth endpoints the client library talks to, all over the in-memory database.
Row changes are published on the database's change feed.
"""

from typing import Any

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel

from drivedrop.database import DuplicateKeyError, Row, get_db, utcnow_iso
from drivedrop.models import ShipmentStatus, VerificationDecision
from drivedrop.photos import REQUIRED_ANGLES

router = APIRouter()

MIN_VERIFICATION_PHOTOS = len(REQUIRED_ANGLES)

# Query parameters that are not column filters
_RESERVED_PARAMS = {"select", "order"}


class LocationIn(BaseModel):
    lat: float
    lng: float
    accuracy: float | None = None


class StartVerificationRequest(BaseModel):
    location: LocationIn


class RegisterPhotoRequest(BaseModel):
    verificationId: str
    angle: str
    photoUrl: str
    location: LocationIn | None = None


class SubmitVerificationRequest(BaseModel):
    verificationId: str
    decision: VerificationDecision
    driverNotes: str | None = None
    differences: str | None = None
    location: LocationIn | None = None


def _error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status_code, detail={"message": message, "code": code}
    )


def _current_user(request: Request) -> Row:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    user = get_db().user_for_token(token) if scheme.lower() == "bearer" else None
    if user is None:
        raise _error(status.HTTP_401_UNAUTHORIZED, "Authentication required", "UNAUTHORIZED")
    return user


def _shipment_or_404(shipment_id: str) -> Row:
    shipment = get_db().get("shipments", shipment_id)
    if shipment is None:
        raise _error(status.HTTP_404_NOT_FOUND, "Shipment not found", "SHIPMENT_NOT_FOUND")
    return shipment


def _verification_or_404(shipment_id: str, verification_id: str) -> Row:
    verification = get_db().get("pickup_verifications", verification_id)
    if verification is None or verification["shipment_id"] != shipment_id:
        raise _error(
            status.HTTP_404_NOT_FOUND, "Verification not found", "VERIFICATION_NOT_FOUND"
        )
    return verification


def _table_or_404(table: str) -> str:
    if table not in get_db().tables:
        raise _error(status.HTTP_404_NOT_FOUND, f"Unknown table {table}", "42P01")
    return table


def _filters(request: Request) -> dict[str, str]:
    return {
        key: value
        for key, value in request.query_params.items()
        if key not in _RESERVED_PARAMS
    }


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/v1/shipments/{shipment_id}/start-verification")
async def start_verification(
    shipment_id: str, body: StartVerificationRequest, request: Request
) -> dict[str, Any]:
    """
    Open the pickup verification for a shipment.
    Idempotent: a shipment has at most one open verification.
    """
    user = _current_user(request)
    db = get_db()
    shipment = _shipment_or_404(shipment_id)

    verification = db.active_verification(shipment_id)
    if verification is None:
        verification = await db.insert(
            "pickup_verifications",
            {
                "shipment_id": shipment_id,
                "driver_id": user["id"],
                "driver_photos": [],
                "verification_status": None,
                "pickup_location": body.location.model_dump(),
                "gps_accuracy_meters": body.location.accuracy,
                "verification_started_at": utcnow_iso(),
                "verification_completed_at": None,
                "client_response": None,
                "client_responded_at": None,
                "client_response_notes": None,
            },
        )

    if shipment["status"] != ShipmentStatus.PICKUP_VERIFICATION_PENDING:
        await db.update(
            "shipments",
            shipment_id,
            {"status": ShipmentStatus.PICKUP_VERIFICATION_PENDING.value},
        )

    return {"success": True, "data": {"verification": verification}}


@router.post("/api/v1/shipments/{shipment_id}/verification-photos")
async def register_verification_photo(
    shipment_id: str, body: RegisterPhotoRequest, request: Request
) -> dict[str, Any]:
    _current_user(request)
    db = get_db()
    verification = _verification_or_404(shipment_id, body.verificationId)
    if verification.get("verification_status") is not None:
        raise _error(
            status.HTTP_409_CONFLICT,
            "Verification already submitted",
            "VERIFICATION_ALREADY_SUBMITTED",
        )

    photo = {
        "angle": body.angle,
        "url": body.photoUrl,
        "timestamp": utcnow_iso(),
        "location": body.location.model_dump() if body.location else None,
    }
    photos = [p for p in verification["driver_photos"] if p["angle"] != body.angle]
    photos.append(photo)
    await db.update("pickup_verifications", verification["id"], {"driver_photos": photos})

    return {"success": True, "data": {"photo": photo}}


@router.post("/api/v1/shipments/{shipment_id}/submit-verification")
async def submit_verification(
    shipment_id: str, body: SubmitVerificationRequest, request: Request
) -> dict[str, Any]:
    _current_user(request)
    db = get_db()
    _shipment_or_404(shipment_id)
    verification = _verification_or_404(shipment_id, body.verificationId)

    if verification.get("verification_status") is not None:
        raise _error(
            status.HTTP_409_CONFLICT,
            "Verification already submitted",
            "VERIFICATION_ALREADY_SUBMITTED",
        )
    if len(verification["driver_photos"]) < MIN_VERIFICATION_PHOTOS:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            f"Minimum {MIN_VERIFICATION_PHOTOS} photos required",
            "INSUFFICIENT_PHOTOS",
        )

    verification = await db.update(
        "pickup_verifications",
        verification["id"],
        {
            "verification_status": body.decision.value,
            "driver_notes": body.driverNotes,
            "differences_description": body.differences,
            "verification_completed_at": utcnow_iso(),
        },
    )

    if body.decision == VerificationDecision.MATCHES:
        await db.update(
            "shipments", shipment_id, {"status": ShipmentStatus.PICKUP_VERIFIED.value}
        )

    return {"success": True, "data": {"verification": verification}}


@router.get("/rest/v1/{table}")
async def select_rows(table: str, request: Request) -> list[Row]:
    db = get_db()
    return db.select(
        _table_or_404(table), _filters(request), request.query_params.get("order")
    )


@router.post("/rest/v1/rpc/mark_message_as_read")
async def mark_message_as_read(
    p_message_id: str = Body(...), p_user_id: str | None = Body(None)
) -> bool:
    db = get_db()
    if db.get("messages", p_message_id) is None:
        raise _error(status.HTTP_404_NOT_FOUND, "Message not found", "MESSAGE_NOT_FOUND")
    await db.update(
        "messages", p_message_id, {"is_read": True, "read_at": utcnow_iso()}
    )
    return True


@router.post("/rest/v1/{table}", status_code=status.HTTP_201_CREATED)
async def insert_rows(
    table: str, request: Request, payload: dict[str, Any] | list[dict[str, Any]] = Body(...)
) -> list[Row]:
    db = get_db()
    table = _table_or_404(table)
    merge = "merge-duplicates" in request.headers.get("Prefer", "")
    rows = payload if isinstance(payload, list) else [payload]

    stored = []
    for row in rows:
        try:
            if merge:
                stored.append(await db.upsert(table, row))
            else:
                stored.append(await db.insert(table, row))
        except DuplicateKeyError as exc:
            raise _error(status.HTTP_409_CONFLICT, str(exc), "23505") from exc
    return stored


@router.patch("/rest/v1/{table}")
async def update_rows(
    table: str, request: Request, values: dict[str, Any] = Body(...)
) -> list[Row]:
    db = get_db()
    table = _table_or_404(table)
    pk = db.primary_key(table)
    matching = db.select(table, _filters(request))
    return [await db.update(table, row[pk], values) for row in matching]


@router.post("/storage/v1/object/{bucket}/{path:path}")
async def upload_object(bucket: str, path: str, request: Request) -> dict[str, str]:
    db = get_db()
    key = f"{bucket}/{path}"
    upsert = request.headers.get("x-upsert", "false").lower() == "true"
    if key in db.objects and not upsert:
        raise _error(status.HTTP_409_CONFLICT, "The resource already exists", "Duplicate")
    db.objects.put(key, await request.body())
    return {"Key": key}


@router.get("/storage/v1/object/public/{bucket}/{path:path}")
async def download_object(bucket: str, path: str) -> Response:
    content = get_db().objects.get(f"{bucket}/{path}")
    if content is None:
        raise _error(status.HTTP_404_NOT_FOUND, "Object not found", "not_found")
    return Response(content=content, media_type="image/jpeg")


@router.get("/auth/v1/user")
async def current_user(request: Request) -> Row:
    return _current_user(request)


def create_app() -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    return app
