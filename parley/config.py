"""
parley.config — YAML Configuration Loader
==========================================

This module reads ``config.yaml`` for service-wide policy that is not
stored per community: spam visibility, pending-community quota,
background job cadence and the list of communities
seeded as pre-approved.  Per-community knobs (rate limit, member cap,
approval requirement) live on the ``communities`` table and are edited
through the API.

Usage::

    from parley.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.service_name)          # "Parley Dev"
    print(cfg.spam_visibility)       # "visible"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

SPAM_VISIBILITY_POLICIES = frozenset({"visible", "hidden"})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ParleyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str = "Parley"

    # API
    api_port: int = 8000

    # Moderation policy
    spam_visibility: str = "visible"  # "visible" (flag only) or "hidden"
    max_pending_per_creator: int = 3

    # Background jobs / realtime
    reconcile_interval_seconds: int = 300  # 0 disables the periodic sweep
    ws_heartbeat_seconds: int = 30

    # Seeding
    seed_creator_id: str = "system"
    seed_communities: tuple[dict, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ParleyConfig:
    """Read *path* and return a :class:`ParleyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If ``spam_visibility`` is not a known policy.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    visibility = str(raw.get("spam_visibility", "visible")).lower()
    if visibility not in SPAM_VISIBILITY_POLICIES:
        raise ValueError(
            f"spam_visibility must be one of {sorted(SPAM_VISIBILITY_POLICIES)}, "
            f"got {visibility!r}"
        )

    return ParleyConfig(
        service_name=raw.get("service_name", "Parley"),
        api_port=int(raw.get("api_port", 8000)),
        spam_visibility=visibility,
        max_pending_per_creator=int(raw.get("max_pending_per_creator", 3)),
        reconcile_interval_seconds=int(raw.get("reconcile_interval_seconds", 300)),
        ws_heartbeat_seconds=int(raw.get("ws_heartbeat_seconds", 30)),
        seed_creator_id=str(raw.get("seed_creator_id", "system")),
        seed_communities=tuple(raw.get("seed_communities") or ()),
    )
