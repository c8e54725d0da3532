from __future__ import annotations

from typing import Iterable, List, Protocol, Set


class PermissionState(Protocol):
    def is_granted(self, permission: str) -> bool: ...

    def is_requestable(self, permission: str) -> bool: ...

    def grant(self, permission: str) -> None: ...


class StaticPermissions:
    """Permission snapshot held in memory; `revoke`/`grant` mutate it between steps."""

    def __init__(
        self,
        granted: Iterable[str] = (),
        requestable: Iterable[str] = (),
    ) -> None:
        self._granted: Set[str] = set(granted)
        self._requestable: Set[str] = set(requestable)

    def is_granted(self, permission: str) -> bool:
        return permission in self._granted

    def is_requestable(self, permission: str) -> bool:
        return permission in self._requestable

    def grant(self, permission: str) -> None:
        self._granted.add(permission)

    def revoke(self, permission: str) -> None:
        self._granted.discard(permission)

    def granted(self) -> List[str]:
        return sorted(self._granted)


def missing_permissions(required: Iterable[str], state: PermissionState) -> List[str]:
    return [p for p in required if not state.is_granted(p)]
