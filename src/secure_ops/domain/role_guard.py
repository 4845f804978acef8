"""Pure, table-driven permission checks.

The RoleGuard never performs I/O: it compares a role (or a caller address)
against the role requirements declared in the OperationRegistry and the
RoleSet snapshot it is handed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from secure_ops.domain.enums import OperationPhase, OperationType, Role
from secure_ops.domain.exceptions import Unauthorized, UnknownOperationType
from secure_ops.domain.models import same_address

if TYPE_CHECKING:
    from secure_ops.domain.models import RoleSet
    from secure_ops.domain.registry import OperationRegistry

# Longest first so "meta-approve-..." is not read as "approve-..."
_PHASES_BY_LENGTH = sorted(OperationPhase, key=lambda p: len(p.value), reverse=True)


@dataclass(frozen=True)
class GuardedAction:
    """An (operation, phase) pair, e.g. approve + OWNERSHIP_TRANSFER."""

    operation_type: OperationType
    phase: OperationPhase

    @classmethod
    def parse(cls, action: str) -> GuardedAction:
        """Parse the slug form "<phase>-<operation>", e.g. "approve-ownership-transfer".

        Raises:
            ValueError: If the slug names no known phase or operation.
        """
        slug = action.strip().lower()
        for phase in _PHASES_BY_LENGTH:
            prefix = f"{phase.value}-"
            if slug.startswith(prefix):
                name = slug[len(prefix):].replace("-", "_").upper()
                try:
                    return cls(OperationType(name), phase)
                except ValueError:
                    break
        raise ValueError(f"Unrecognised action '{action}'")

    @property
    def slug(self) -> str:
        return f"{self.phase.value}-{self.operation_type.value.lower().replace('_', '-')}"


class RoleGuard:
    """Decides which roles may perform which actions."""

    def __init__(self, registry: OperationRegistry) -> None:
        self._registry = registry

    def required_roles(self, action: GuardedAction) -> frozenset[Role]:
        try:
            spec = self._registry.resolve(action.operation_type)
        except (KeyError, UnknownOperationType):
            return frozenset()
        return spec.roles_for(action.phase)

    def authorize(self, action: GuardedAction | str, role: Role | str, role_set: RoleSet) -> bool:
        """Return True if ``role`` may perform ``action`` on a contract with ``role_set``.

        A role whose address is unset (zero address) never authorises.
        """
        try:
            guarded = action if isinstance(action, GuardedAction) else GuardedAction.parse(action)
            role = Role(role)
        except ValueError:
            return False
        return role in self.required_roles(guarded) and role_set.is_assigned(role)

    @staticmethod
    def roles_of(address: str | None, role_set: RoleSet) -> frozenset[Role]:
        """All roles held by ``address`` (one address may hold several)."""
        if not address:
            return frozenset()
        return frozenset(
            role
            for role in Role
            if role_set.is_assigned(role) and same_address(role_set.address_of(role), address)
        )

    def authorize_address(
        self, action: GuardedAction | str, address: str | None, role_set: RoleSet
    ) -> bool:
        return any(
            self.authorize(action, role, role_set) for role in self.roles_of(address, role_set)
        )

    def require(self, action: GuardedAction, address: str | None, role_set: RoleSet) -> None:
        """Raise Unauthorized unless ``address`` may perform ``action``."""
        if not self.authorize_address(action, address, role_set):
            raise Unauthorized(action.slug, address or "<anonymous>")
