"""
tests/test_permissions.py — Capability bitset and authority ranks
==================================================================
"""

from __future__ import annotations

import pytest

from parley.engine.permissions import (
    ALL_CAPABILITIES,
    Actor,
    Capability,
    Rank,
    actor_rank,
    capabilities_from_flags,
    capabilities_from_names,
    capabilities_to_flags,
    has_capability,
    outranks,
    target_rank,
)


class TestCapabilityConversions:
    def test_flags_default_to_granted(self):
        assert capabilities_from_flags(None) == ALL_CAPABILITIES
        assert capabilities_from_flags({}) == ALL_CAPABILITIES

    def test_explicit_false_withholds(self):
        caps = capabilities_from_flags({"can_ban": False, "can_manage_rules": False})
        assert Capability.BAN not in caps
        assert Capability.MANAGE_RULES not in caps
        assert Capability.KICK in caps

    def test_round_trip_through_flags(self):
        caps = Capability.KICK | Capability.PIN
        flags = capabilities_to_flags(int(caps))
        assert flags["can_kick"] is True
        assert flags["can_pin"] is True
        assert flags["can_ban"] is False
        assert capabilities_from_flags(flags) == caps

    def test_from_names_accepts_wire_and_enum_names(self):
        assert capabilities_from_names(["can_kick", "ban"]) == Capability.KICK | Capability.BAN

    def test_from_names_rejects_unknown(self):
        with pytest.raises(KeyError):
            capabilities_from_names(["fly"])


class TestHasCapability:
    def test_member_has_nothing(self):
        assert has_capability("member", int(ALL_CAPABILITIES), Capability.KICK) is False

    def test_moderator_needs_the_bit(self):
        perms = int(Capability.KICK)
        assert has_capability("moderator", perms, Capability.KICK) is True
        assert has_capability("moderator", perms, Capability.BAN) is False

    def test_any_moderator(self):
        assert has_capability("moderator", 0, None) is True

    def test_creator_and_admin_have_everything(self):
        assert has_capability("creator", 0, Capability.BAN) is True
        assert has_capability(None, 0, Capability.BAN, is_admin=True) is True


class TestRanks:
    def test_actor_rank_order(self):
        assert actor_rank(None, 0, Capability.BAN, is_admin=True) == Rank.ADMIN
        assert actor_rank("creator", 0, Capability.BAN) == Rank.CREATOR
        assert actor_rank("moderator", int(Capability.BAN), Capability.BAN) == Rank.MODERATOR
        assert actor_rank("moderator", int(Capability.KICK), Capability.BAN) == Rank.NONE
        assert actor_rank("member", 0, None) == Rank.NONE

    def test_strict_outranking(self):
        assert outranks(Rank.MODERATOR, target_rank("member"))
        assert not outranks(Rank.MODERATOR, target_rank("moderator"))
        assert outranks(Rank.CREATOR, target_rank("moderator"))
        assert not outranks(Rank.CREATOR, target_rank("creator"))
        assert outranks(Rank.ADMIN, target_rank("creator"))


class TestActor:
    def test_admin_role(self):
        assert Actor("1", role="admin").is_admin
        assert not Actor("1").is_admin
