"""
approval_services.approver_resolver -- In-process approver directory.

``StaticApproverResolver`` satisfies the ``ApproverResolver`` protocol from
``approval_kernel.domain.workflow``.  It can be replaced with an HR
directory, LDAP or database-backed implementation.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

USER_PREFIX = "user:"
ROLE_PREFIX = "role:"


class StaticApproverResolver:
    """Resolver backed by a role -> members mapping.

    References:
        ``user:<id>`` or a bare ``<id>`` name one individual.
        ``role:<name>`` names every member of the role, in mapping order.

    When ``known_users`` is given, individual references outside it (and
    role members outside it) resolve to nothing.
    """

    def __init__(
        self,
        roles: Mapping[str, Iterable[str]] | None = None,
        known_users: Iterable[str] | None = None,
    ) -> None:
        self._roles: dict[str, tuple[str, ...]] = {
            name: tuple(dict.fromkeys(members)) for name, members in (roles or {}).items()
        }
        self._known = frozenset(known_users) if known_users is not None else None

    def _exists(self, user_id: str) -> bool:
        return self._known is None or user_id in self._known

    def resolve(self, reference: str) -> tuple[str, ...]:
        reference = reference.strip()
        if reference.startswith(ROLE_PREFIX):
            members = self._roles.get(reference[len(ROLE_PREFIX):], ())
            return tuple(m for m in members if self._exists(m))
        if reference.startswith(USER_PREFIX):
            reference = reference[len(USER_PREFIX):]
        if reference and self._exists(reference):
            return (reference,)
        return ()

    def roles_of(self, user_id: str) -> tuple[str, ...]:
        return tuple(name for name, members in self._roles.items() if user_id in members)

    def with_role(self, role: str, members: Iterable[str]) -> StaticApproverResolver:
        """Return a copy with ``role`` replaced by ``members``."""
        roles = dict(self._roles)
        roles[role] = tuple(members)
        return StaticApproverResolver(roles, self._known)
