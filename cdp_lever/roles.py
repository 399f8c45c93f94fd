"""
roles.py - Role holders, allow-lists and authorization checks

Every privileged operation names the role it needs and calls one of the
require_* checks before touching state. Allow-lists are plain set membership.
"""

from __future__ import annotations
from typing import Any, Iterable, Optional, Set

from .core import AuthorizationError


class AllowList:
    """
    Set-membership gate.

    When `open_to_all` is True every caller passes; otherwise only members do.
    """

    def __init__(self, name: str, members: Optional[Iterable[str]] = None, open_to_all: bool = False):
        self.name = name
        self.members: Set[str] = set(members or ())
        self.open_to_all = open_to_all

    def is_allowed(self, caller: str) -> bool:
        return self.open_to_all or caller in self.members

    def set_allowed(self, address: str, allowed: bool) -> None:
        if allowed:
            self.members.add(address)
        else:
            self.members.discard(address)

    def require(self, caller: str) -> None:
        if not self.is_allowed(caller):
            raise AuthorizationError(f"{caller} is not on the {self.name} allow-list")

    def snapshot(self) -> Any:
        return (set(self.members), self.open_to_all)

    def restore(self, snapshot: Any) -> None:
        members, open_to_all = snapshot
        self.members = set(members)
        self.open_to_all = open_to_all

    def __repr__(self) -> str:
        scope = "open" if self.open_to_all else f"{len(self.members)} members"
        return f"AllowList({self.name!r}, {scope})"


class Roles:
    """
    Who may call what.

    management: open, terms, thresholds, allow-lists
    keepers: tend and report (management may too)
    emergency_admin: emergency unwind and manual swaps (management may too)
    governance: stray-token sweep
    """

    def __init__(
        self,
        management: str,
        governance: str,
        keepers: Optional[Iterable[str]] = None,
        emergency_admin: Optional[str] = None,
    ):
        if not management or not governance:
            raise ValueError("management and governance must be set")
        self.management = management
        self.governance = governance
        self.keepers: Set[str] = set(keepers or ())
        self.emergency_admin = emergency_admin

    def require_management(self, caller: str) -> None:
        if caller != self.management:
            raise AuthorizationError(f"{caller} is not management")

    def require_keeper(self, caller: str) -> None:
        if caller != self.management and caller not in self.keepers:
            raise AuthorizationError(f"{caller} is not a keeper")

    def require_emergency(self, caller: str) -> None:
        if caller != self.management and caller != self.emergency_admin:
            raise AuthorizationError(f"{caller} is not emergency authorized")

    def require_governance(self, caller: str) -> None:
        if caller != self.governance:
            raise AuthorizationError(f"{caller} is not governance")

    def snapshot(self) -> Any:
        return (self.management, self.governance, set(self.keepers), self.emergency_admin)

    def restore(self, snapshot: Any) -> None:
        self.management, self.governance, keepers, self.emergency_admin = snapshot
        self.keepers = set(keepers)
