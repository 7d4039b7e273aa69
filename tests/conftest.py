import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import drivedrop.database
from drivedrop.api import create_app
from drivedrop.backend import BackendClient
from drivedrop.capture import CaptureSession
from drivedrop.client_response import clear_response_locks
from drivedrop.config import Settings
from drivedrop.database import Database, get_db
from drivedrop.errors import Permission, PermissionDeniedError
from drivedrop.models import Location
from drivedrop.photos import REQUIRED_ANGLES

DRIVER_ID = "5b1f7c1e-8a39-4c55-9d0e-2f7e6a3c9b10"
CLIENT_ID = "c7d2e4a8-1f3b-4e6d-a9c0-7b5e3d2f1a48"
ADMIN_ID = "a0e1b2c3-d4e5-4f60-8a7b-9c0d1e2f3a4b"
DRIVER_TOKEN = "driver-token"
CLIENT_TOKEN = "client-token"
SHIPMENT_ID = "0f6c8b2a-3d4e-4f5a-9b8c-7d6e5f4a3b2c"

T0 = datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC)

REFERENCE_PHOTOS = {
    "front": ["https://cdn.example/ref/front.jpg"],
    "rear": ["https://cdn.example/ref/rear.jpg"],
    "left": [],
    "interior": ["https://cdn.example/ref/interior.jpg"],
}


class RecordingTransport(httpx.AsyncBaseTransport):
    """
    ASGI transport that records every request and can fake failures.

    ``fail`` entries answer 500, ``drop`` entries answer an empty 200
    without reaching the app. Both are ``(method, path suffix)`` pairs.
    ``hold`` maps such a pair to an event: the request reaches the app, but
    its response is not returned until the event is set.
    """

    def __init__(self, app: Any) -> None:
        self._inner = ASGITransport(app=app)
        self.requests: list[tuple[str, str]] = []
        self.fail: set[tuple[str, str]] = set()
        self.drop: set[tuple[str, str]] = set()
        self.hold: dict[tuple[str, str], asyncio.Event] = {}
        self.held: list[tuple[str, str]] = []

    @staticmethod
    def _hit(rules: set[tuple[str, str]], request: httpx.Request) -> bool:
        return any(
            request.method == method and request.url.path.endswith(suffix)
            for method, suffix in rules
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self._hit(self.fail, request):
            return httpx.Response(500, json={"message": "Internal error"})
        if self._hit(self.drop, request):
            return httpx.Response(200)
        response = await self._inner.handle_async_request(request)
        for rule, release in self.hold.items():
            if self._hit({rule}, request):
                self.held.append((request.method, request.url.path))
                await release.wait()
        return response

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.endswith(suffix))

    def index(self, method: str, suffix: str) -> list[int]:
        return [
            i
            for i, (m, p) in enumerate(self.requests)
            if m == method and p.endswith(suffix)
        ]


class FixedLocation:
    def __init__(self, denied: bool = False) -> None:
        self.denied = denied
        self.calls = 0

    async def current_location(self) -> Location:
        self.calls += 1
        if self.denied:
            raise PermissionDeniedError(Permission.LOCATION)
        return Location(lat=37.7749, lng=-122.4194, accuracy=12.5)


@pytest.fixture(autouse=True)
def reset_db():
    """Fresh database with the driver and client sessions registered."""
    clear_response_locks()
    drivedrop.database._db = None
    db = get_db()
    db.tokens.put(
        DRIVER_TOKEN,
        {
            "id": DRIVER_ID,
            "email": "driver@example.com",
            "user_metadata": {"first_name": "Dana", "role": "driver"},
        },
    )
    db.tokens.put(
        CLIENT_TOKEN,
        {"id": CLIENT_ID, "email": "client@example.com", "user_metadata": {}},
    )
    yield
    drivedrop.database._db = None


@pytest.fixture
def db() -> Database:
    return get_db()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_url="http://test/api/v1",
        supabase_url="http://test",
        registration_confirm_attempts=2,
        registration_confirm_interval=0.0,
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport(create_app())


@pytest_asyncio.fixture
async def client():
    """Raw HTTP client for the emulator."""
    async with AsyncClient(
        transport=ASGITransport(app=create_app()), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest_asyncio.fixture
async def backend(settings: Settings, transport: RecordingTransport):
    async with BackendClient(
        settings, access_token=DRIVER_TOKEN, transport=transport
    ) as backend_client:
        yield backend_client


@pytest_asyncio.fixture
async def shipment(db: Database) -> dict[str, Any]:
    """A shipment whose driver has arrived at pickup."""
    return await db.insert(
        "shipments",
        {
            "id": SHIPMENT_ID,
            "status": "driver_arrived",
            "client_id": CLIENT_ID,
            "driver_id": DRIVER_ID,
            "pickup_address": "1 Market St, San Francisco, CA",
            "delivery_address": "500 Broadway, Oakland, CA",
            "estimated_price": 845.0,
            "client_vehicle_photos": REFERENCE_PHOTOS,
        },
    )


@pytest.fixture
def make_verification(db: Database, shipment: dict[str, Any]):
    """Insert a verification the driver has already submitted."""

    async def _make(
        decision: str = "minor_differences",
        completed_at: datetime = T0,
        **overrides: Any,
    ) -> dict[str, Any]:
        row = {
            "shipment_id": shipment["id"],
            "driver_id": DRIVER_ID,
            "driver_photos": [
                {"angle": angle.value, "url": f"https://cdn.example/{angle}.jpg"}
                for angle in REQUIRED_ANGLES
            ],
            "verification_status": decision,
            "differences_description": "Scratch on rear bumper",
            "verification_completed_at": completed_at.isoformat(),
            "client_response": None,
            "client_responded_at": None,
            "client_response_notes": None,
        }
        row.update(overrides)
        await db.update(
            "shipments", shipment["id"], {"status": "pickup_verification_pending"}
        )
        return await db.insert("pickup_verifications", row)

    return _make


async def wait_for(condition, attempts: int = 1000) -> None:
    """Yield to the event loop until ``condition()`` holds."""
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def photo_files(tmp_path: Path) -> dict[str, Path]:
    files = {}
    for angle in REQUIRED_ANGLES:
        path = tmp_path / f"{angle}.jpg"
        path.write_bytes(b"\xff\xd8\xff\xe0" + angle.value.encode())
        files[angle.value] = path
    return files


@pytest.fixture
def full_session(shipment: dict[str, Any], photo_files: dict[str, Path]) -> CaptureSession:
    session = CaptureSession(shipment["id"])
    for angle, path in photo_files.items():
        session.capture(angle, str(path))
    return session
