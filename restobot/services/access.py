from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Mapping

from restobot.adapters.store import TenantStore
from restobot.errors import AuthorizationFailure
from restobot.schemas.operation import OperationDescriptor, OperationKind

audit_logger = logging.getLogger("restobot.audit")

RESTAURANTS_COLLECTION = "restaurants"
MEMBERSHIP_COLLECTION = "user_restaurants"

ROLE_PERMISSIONS: Mapping[str, FrozenSet[str]] = {
    "OWNER": frozenset({"read", "write", "delete", "admin"}),
    "MANAGER": frozenset({"read", "write", "delete", "admin"}),
    "ADMIN": frozenset({"read", "write"}),
    "STAFF": frozenset({"read", "write"}),
    "WAITER": frozenset({"read"}),
}

REQUIRED_PERMISSION: Mapping[OperationKind, str] = {
    OperationKind.READ: "read",
    OperationKind.CREATE: "write",
    OperationKind.UPDATE: "write",
    OperationKind.DELETE: "delete",
}

DELETE_ROLES = frozenset({"OWNER", "MANAGER"})


@dataclass(frozen=True)
class AccessGrant:
    user_id: str
    restaurant_id: str
    role: str
    permissions: FrozenSet[str]

    def allows(self, permission: str) -> bool:
        return permission in self.permissions and permission in ROLE_PERMISSIONS.get(self.role, frozenset())


class AccessControl:
    """Resolves Access Grants from tenant ownership and membership records.

    Grants are computed on every call and never cached.
    """

    def __init__(self, store: TenantStore) -> None:
        self._store = store

    def resolve_grant(self, user_id: str, restaurant_id: str) -> AccessGrant:
        if not user_id or not restaurant_id:
            raise AuthorizationFailure("Authentication required", code="UNAUTHENTICATED")

        restaurant = self._store.get(RESTAURANTS_COLLECTION, restaurant_id)
        if restaurant and restaurant.get("ownerId") == user_id:
            return AccessGrant(
                user_id=user_id,
                restaurant_id=restaurant_id,
                role="OWNER",
                permissions=ROLE_PERMISSIONS["OWNER"],
            )

        for membership in self._store.find(MEMBERSHIP_COLLECTION, restaurant_id):
            if membership.get("userId") != user_id:
                continue
            role = str(membership.get("role") or "STAFF").upper()
            permissions = membership.get("permissions") or ["read"]
            return AccessGrant(
                user_id=user_id,
                restaurant_id=restaurant_id,
                role=role,
                permissions=frozenset(str(item) for item in permissions),
            )

        audit_logger.warning("Access denied: user=%s restaurant=%s (no ownership or membership)", user_id, restaurant_id)
        raise AuthorizationFailure("Access denied to restaurant data")

    def authorize(self, grant: AccessGrant, operation: OperationDescriptor) -> None:
        required = REQUIRED_PERMISSION[operation.kind]
        if not grant.allows(required):
            audit_logger.warning(
                "Permission denied: user=%s role=%s restaurant=%s operation=%s required=%s",
                grant.user_id,
                grant.role,
                grant.restaurant_id,
                operation.name,
                required,
            )
            raise AuthorizationFailure(f"Insufficient permissions for {operation.name}")
        if operation.kind is OperationKind.DELETE and grant.role not in DELETE_ROLES:
            audit_logger.warning(
                "Delete denied: user=%s role=%s restaurant=%s collection=%s",
                grant.user_id,
                grant.role,
                grant.restaurant_id,
                operation.collection,
            )
            raise AuthorizationFailure("Only owners and managers can delete data")
