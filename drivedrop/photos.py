"""
Photo angles and the parsing boundary for photo collections.

Verification photos reach us either as a JSON string or as a list of
``{"angle": ..., "url": ...}`` objects depending on which table column they
came from. Everything past this module sees ``list[VerificationPhoto]``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from drivedrop.errors import PhotoCollectionError
from drivedrop.models import PickupVerification, VerificationPhoto


class PhotoAngle(StrEnum):
    FRONT = "front"
    BACK = "back"
    LEFT_SIDE = "left_side"
    RIGHT_SIDE = "right_side"
    INTERIOR = "interior"
    DASHBOARD = "dashboard"


REQUIRED_ANGLES: tuple[PhotoAngle, ...] = (
    PhotoAngle.FRONT,
    PhotoAngle.BACK,
    PhotoAngle.LEFT_SIDE,
    PhotoAngle.RIGHT_SIDE,
    PhotoAngle.INTERIOR,
    PhotoAngle.DASHBOARD,
)


class ReferenceAngle(StrEnum):
    """Keys of the reference photos a client uploads before pickup."""

    FRONT = "front"
    REAR = "rear"
    LEFT = "left"
    RIGHT = "right"
    INTERIOR = "interior"
    DAMAGE = "damage"


REFERENCE_KEYS: dict[PhotoAngle, ReferenceAngle] = {
    PhotoAngle.FRONT: ReferenceAngle.FRONT,
    PhotoAngle.BACK: ReferenceAngle.REAR,
    PhotoAngle.LEFT_SIDE: ReferenceAngle.LEFT,
    PhotoAngle.RIGHT_SIDE: ReferenceAngle.RIGHT,
    PhotoAngle.INTERIOR: ReferenceAngle.INTERIOR,
    PhotoAngle.DASHBOARD: ReferenceAngle.DAMAGE,
}


def to_angle(value: Any) -> PhotoAngle:
    try:
        return PhotoAngle(value)
    except ValueError:
        raise PhotoCollectionError(f"Unknown photo angle: {value!r}") from None


def _load_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PhotoCollectionError(f"Photo collection is not valid JSON: {exc}") from exc


def parse_photo_collection(raw: Any) -> list[VerificationPhoto]:
    """
    Normalize a driver photo payload into an ordered list.

    Accepts a JSON string or a list of mappings with ``angle`` and ``url``.
    ``None`` and the empty string mean no photos. Anything else raises
    PhotoCollectionError.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = _load_json(raw)
    if not isinstance(raw, list):
        raise PhotoCollectionError(
            f"Photo collection must be a list, got {type(raw).__name__}"
        )

    photos: list[VerificationPhoto] = []
    for index, item in enumerate(raw):
        if isinstance(item, VerificationPhoto):
            item = item.model_dump()
        if not isinstance(item, Mapping):
            raise PhotoCollectionError(f"Photo #{index} is not an object")
        url = item.get("url")
        if not isinstance(url, str) or not url:
            raise PhotoCollectionError(f"Photo #{index} has no url")
        angle = to_angle(item.get("angle"))
        photos.append(VerificationPhoto(angle=angle.value, url=url))
    return photos


class ClientReferencePhotos:
    """Reference photo URLs keyed by vehicle angle, supplied by the client."""

    def __init__(self, photos: Mapping[ReferenceAngle, list[str]] | None = None) -> None:
        self._photos: dict[ReferenceAngle, list[str]] = dict(photos or {})

    @classmethod
    def from_raw(cls, raw: Any) -> ClientReferencePhotos:
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, str):
            raw = _load_json(raw)
        if not isinstance(raw, Mapping):
            raise PhotoCollectionError(
                f"Reference photos must be an object, got {type(raw).__name__}"
            )

        photos: dict[ReferenceAngle, list[str]] = {}
        for key, urls in raw.items():
            try:
                angle = ReferenceAngle(key)
            except ValueError:
                raise PhotoCollectionError(
                    f"Unknown reference angle: {key!r}"
                ) from None
            if urls is None:
                continue
            if not isinstance(urls, list) or not all(
                isinstance(url, str) for url in urls
            ):
                raise PhotoCollectionError(
                    f"Reference photos for {key!r} must be a list of urls"
                )
            photos[angle] = [url for url in urls if url]
        return cls(photos)

    def for_angle(self, angle: PhotoAngle | str) -> str | None:
        """First reference URL for a capture angle, or None if there is none."""
        urls = self._photos.get(REFERENCE_KEYS[PhotoAngle(angle)], [])
        return urls[0] if urls else None

    def __bool__(self) -> bool:
        return any(self._photos.values())


def verification_from_row(row: Mapping[str, Any]) -> PickupVerification:
    """Build a PickupVerification from a raw table row."""
    return PickupVerification.model_validate(
        {**row, "driver_photos": parse_photo_collection(row.get("driver_photos"))}
    )
