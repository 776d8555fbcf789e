"""
parley.engine.permissions — Capability Set & Authority Ranks
=============================================================

Moderator powers are stored as a single integer bitset on the membership
row (:class:`Capability`).  Whether an actor may act on a target reduces
to one comparison of two ranks:

    actor:  admin (3) > creator (2) > moderator holding the capability (1) > none (0)
    target: creator (2) > moderator (1) > member (0)

The actor must rank **strictly** higher than the target, so moderators
can act on ordinary members only and nobody but an admin outranks the
creator (the creator is additionally immune to kick/ban/leave at the
state-machine level).

Pure functions — no DB access, no side effects.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from parley.database.models import MemberRole


class Capability(enum.IntFlag):
    NONE = 0
    KICK = 1
    BAN = 2
    DELETE_MESSAGES = 4
    MANAGE_RULES = 8
    INVITE = 16
    PIN = 32


ALL_CAPABILITIES = (
    Capability.KICK
    | Capability.BAN
    | Capability.DELETE_MESSAGES
    | Capability.MANAGE_RULES
    | Capability.INVITE
    | Capability.PIN
)

# Wire names used by the REST API (``{"can_ban": false, ...}``).
CAPABILITY_NAMES: dict[str, Capability] = {
    "can_kick": Capability.KICK,
    "can_ban": Capability.BAN,
    "can_delete_messages": Capability.DELETE_MESSAGES,
    "can_manage_rules": Capability.MANAGE_RULES,
    "can_invite": Capability.INVITE,
    "can_pin": Capability.PIN,
}


class Rank(enum.IntEnum):
    NONE = 0
    MODERATOR = 1
    CREATOR = 2
    ADMIN = 3


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------
def capabilities_from_flags(flags: Mapping[str, bool] | None) -> Capability:
    """Build a capability set from ``{"can_x": bool}``.

    Capabilities not mentioned default to granted; only an explicit
    ``False`` withholds one.
    """
    flags = flags or {}
    result = Capability.NONE
    for name, cap in CAPABILITY_NAMES.items():
        if flags.get(name, True) is not False:
            result |= cap
    return result


def capabilities_from_names(names: Iterable[str]) -> Capability:
    """Build a capability set from wire names or enum member names."""
    result = Capability.NONE
    for name in names:
        key = name.lower()
        if key in CAPABILITY_NAMES:
            result |= CAPABILITY_NAMES[key]
        else:
            result |= Capability[name.upper()]
    return result


def capabilities_to_flags(value: int) -> dict[str, bool]:
    caps = Capability(value)
    return {name: cap in caps for name, cap in CAPABILITY_NAMES.items()}


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------
def has_capability(
    role: str | None,
    permissions: int,
    capability: Capability | None,
    *,
    is_admin: bool = False,
) -> bool:
    """True if the actor may exercise *capability* in the community.

    ``capability=None`` means "any moderator".
    """
    if is_admin or role == MemberRole.CREATOR:
        return True
    if role != MemberRole.MODERATOR:
        return False
    if capability is None:
        return True
    return capability in Capability(permissions)


def actor_rank(
    role: str | None,
    permissions: int,
    capability: Capability | None,
    *,
    is_admin: bool = False,
) -> Rank:
    if is_admin:
        return Rank.ADMIN
    if role == MemberRole.CREATOR:
        return Rank.CREATOR
    if has_capability(role, permissions, capability):
        return Rank.MODERATOR
    return Rank.NONE


def target_rank(role: str) -> Rank:
    if role == MemberRole.CREATOR:
        return Rank.CREATOR
    if role == MemberRole.MODERATOR:
        return Rank.MODERATOR
    return Rank.NONE


def outranks(actor: Rank, target: Rank) -> bool:
    return actor > target


# ---------------------------------------------------------------------------
# Actor — identity supplied by the authentication layer
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller: ``{userId, role}`` from the identity service."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
