"""
Session bootstrap and profile provisioning.

``bootstrap_session`` turns whatever auth state the client holds into one of
three explicit results. Profiles are created on first sign-in; concurrent
requests for the same user share a single in-flight fetch-or-create.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel

from drivedrop.backend import BackendClient, eq
from drivedrop.errors import BackendError
from drivedrop.models import Profile, Role

logger = logging.getLogger(__name__)


class Authenticated(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    profile: Profile


class Anonymous(BaseModel):
    kind: Literal["anonymous"] = "anonymous"


class SessionFailure(BaseModel):
    kind: Literal["error"] = "error"
    message: str


SessionState = Authenticated | Anonymous | SessionFailure


class ProfileProvisioner:
    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend
        self._inflight: dict[str, asyncio.Task[Profile]] = {}

    async def get_or_create(self, user: dict[str, Any]) -> Profile:
        user_id = user["id"]
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._fetch_or_create(user))
            self._inflight[user_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(user_id, None))
        else:
            logger.debug("Profile fetch already in progress for user %s", user_id)
        return await asyncio.shield(task)

    async def _fetch(self, user_id: str) -> Profile | None:
        row = await self.backend.select_one("profiles", {"id": eq(user_id)})
        return Profile.model_validate(row) if row is not None else None

    async def _fetch_or_create(self, user: dict[str, Any]) -> Profile:
        user_id = user["id"]
        profile = await self._fetch(user_id)
        if profile is not None:
            return profile

        logger.info("Profile not found, creating new profile for user %s", user_id)
        metadata = user.get("user_metadata") or {}
        now = datetime.now(UTC).isoformat()
        new_profile = {
            "id": user_id,
            "first_name": metadata.get("first_name") or "User",
            "last_name": metadata.get("last_name") or "",
            "email": user.get("email") or "",
            "role": metadata.get("role") or Role.CLIENT.value,
            "phone": metadata.get("phone"),
            "is_verified": False,
            "created_at": now,
            "updated_at": now,
        }
        try:
            row = await self.backend.insert("profiles", new_profile)
        except BackendError as exc:
            if not exc.is_conflict:
                raise
            # Created concurrently from another device
            logger.info("Profile for %s already exists, fetching it", user_id)
            profile = await self._fetch(user_id)
            if profile is None:
                raise
            return profile
        return Profile.model_validate(row or new_profile)


async def bootstrap_session(
    backend: BackendClient, provisioner: ProfileProvisioner | None = None
) -> SessionState:
    provisioner = provisioner or ProfileProvisioner(backend)
    try:
        user = await backend.get_user()
        if user is None:
            return Anonymous()
        profile = await provisioner.get_or_create(user)
    except BackendError as exc:
        logger.error("Session bootstrap failed: %s", exc)
        return SessionFailure(message=exc.user_message)
    return Authenticated(profile=profile)
