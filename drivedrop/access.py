from collections.abc import Iterable, Mapping

from drivedrop.errors import AccessDeniedError
from drivedrop.models import Profile, Role

ROUTE_ROLES: dict[str, frozenset[Role]] = {
    "DriverPickupVerification": frozenset({Role.DRIVER}),
    "DriverDashboard": frozenset({Role.DRIVER}),
    "AvailableJobs": frozenset({Role.DRIVER}),
    "ClientPickupAlert": frozenset({Role.CLIENT}),
    "NewShipment": frozenset({Role.CLIENT}),
    "AdminDashboard": frozenset({Role.ADMIN}),
    "AdminAssignment": frozenset({Role.ADMIN}),
    "AdminJobApplications": frozenset({Role.ADMIN}),
    "ShipmentDetails": frozenset({Role.CLIENT, Role.DRIVER, Role.ADMIN}),
    "Messages": frozenset(),
}


def can_access(profile: Profile | None, required_roles: Iterable[Role | str]) -> bool:
    """Whether the profile may enter a screen gated on the given roles.

    No roles means any signed-in profile.
    """
    if profile is None:
        return False
    roles = {Role(r) for r in required_roles}
    return not roles or profile.role in roles


class RouteGuard:
    def __init__(self, routes: Mapping[str, Iterable[Role]] | None = None) -> None:
        self.routes = dict(routes if routes is not None else ROUTE_ROLES)

    def allowed(self, route: str, profile: Profile | None) -> bool:
        # Unknown routes still need a signed-in profile
        return can_access(profile, self.routes.get(route, ()))

    def check(self, route: str, profile: Profile | None) -> None:
        if not self.allowed(route, profile):
            raise AccessDeniedError(route)
