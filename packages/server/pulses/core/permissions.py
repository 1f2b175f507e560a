"""
Permission capabilities consumed by the pulse core.

The permission subsystem and the card subsystem own the real rules; this
module defines the interfaces the pulse services call, the explicit
``Principal`` passed to every check, and path-based default implementations.

Permission objects are slash-delimited paths such as ``/db/1/`` or
``/collection/4/read/``. A grant covers an object when the grant is a prefix
of it, so ``/collection/4/`` (read-write) covers ``/collection/4/read/``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from pulses.models.card import Card
from pulses_shared.schemas.common import PermissionMode

ROOT_PATH = "/"


@dataclass(frozen=True)
class Principal:
    """The identity a permission check is evaluated for."""

    id: int
    email: Optional[str] = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    is_superuser: bool = False

    @property
    def grants(self) -> frozenset[str]:
        if self.is_superuser:
            return frozenset({ROOT_PATH})
        return self.permissions


class PermissionChecker(Protocol):
    def has_full_permissions(
        self, mode: PermissionMode, objects: Iterable[str], principal: Principal
    ) -> bool: ...


class CardPermissions(Protocol):
    def perms_objects_set(self, card: Card, mode: PermissionMode) -> set[str]: ...


def _covers(grant: str, obj: str) -> bool:
    return obj.startswith(grant)


class PathPermissionChecker:
    """Every requested object must be covered by at least one grant.

    ``mode`` is already encoded in the object paths, so it only matters to
    checkers with mode-specific rules.
    """

    def has_full_permissions(
        self, mode: PermissionMode, objects: Iterable[str], principal: Principal
    ) -> bool:
        grants = principal.grants
        return all(any(_covers(g, obj) for g in grants) for obj in objects)


class CollectionCardPermissions:
    """Cards inherit permissions from their collection.

    Cards in the root collection fall back to data permissions on their
    database when one is known.
    """

    def perms_objects_set(self, card: Card, mode: PermissionMode) -> set[str]:
        mode = PermissionMode(mode)
        if card.collection_id is not None:
            base = f"/collection/{card.collection_id}/"
        elif card.database_id is not None:
            return {f"/db/{card.database_id}/"}
        else:
            base = "/collection/root/"
        if mode == PermissionMode.READ:
            return {f"{base}read/"}
        return {base}


@dataclass(frozen=True)
class Viewer:
    """A principal together with the capabilities needed to check it."""

    principal: Principal
    checker: PermissionChecker = field(default_factory=PathPermissionChecker)
    card_permissions: CardPermissions = field(default_factory=CollectionCardPermissions)

    def can_read_card(self, card: Card) -> bool:
        objects = self.card_permissions.perms_objects_set(card, PermissionMode.READ)
        return self.checker.has_full_permissions(PermissionMode.READ, objects, self.principal)
