"""
Role registry: the static catalog of roles.
Following Single Responsibility Principle - handles role lookup only.
"""

from typing import Dict, Iterable, Iterator, List, Optional

from .enums import RoleKind
from .exceptions import ValidationError
from .models import Role


class RoleRegistry:
    """Immutable catalog of roles keyed by id"""

    def __init__(self, roles: Iterable[Role] = ()):
        catalog: Dict[str, Role] = {}
        for role in roles:
            if role.id in catalog:
                raise ValidationError(
                    f"Duplicate role id '{role.id}'",
                    field="id",
                    value=role.id,
                )
            catalog[role.id] = role
        self._roles = catalog

    def __contains__(self, role_id: object) -> bool:
        return role_id in self._roles

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles.values())

    def __len__(self) -> int:
        return len(self._roles)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoleRegistry):
            return NotImplemented
        return self._roles == other._roles

    def __repr__(self) -> str:
        return f"RoleRegistry({sorted(self._roles)})"

    def get(self, role_id: str) -> Optional[Role]:
        """Get role by ID"""
        return self._roles.get(role_id)

    def exists(self, role_id: str) -> bool:
        """Validate that role exists"""
        return role_id in self._roles

    def is_active(self, role_id: str) -> bool:
        role = self._roles.get(role_id)
        return bool(role and role.is_active)

    def active_roles(self) -> List[Role]:
        """Active roles ordered by priority, then id"""
        return sorted(
            (r for r in self._roles.values() if r.is_active),
            key=lambda r: (r.priority, r.id),
        )

    def has_capability(self, role_id: str, capability: str) -> bool:
        role = self._roles.get(role_id)
        return bool(role and role.has_capability(capability))

    def roles_of_kind(self, kind: RoleKind) -> List[Role]:
        return [r for r in self._roles.values() if r.kind == kind]
