"""
Parley — Community Chat & Moderation Engine
=============================================
Hosts named chat communities with an approval workflow, a membership
state machine (join / leave / kick / ban / mute), rate-limited and
spam-scored messaging, an append-only moderation audit trail, and
real-time fan-out of community events to connected clients.

Package layout::

    parley/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared limits + text helpers
    ├── errors.py          # Domain exception taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # ORM models (communities, memberships, …)
    │   └── seed.py        # Pre-approved community seeder
    ├── engine/
    │   ├── spam.py        # Pure anti-spam scorer
    │   ├── permissions.py # Capability bitset + authority ranks
    │   └── events.py      # Broadcast event envelope + topics
    ├── services/
    │   ├── community_service.py      # Community registry + approval
    │   ├── membership_service.py     # Membership state machine
    │   ├── message_service.py        # Send / delete / pin / list
    │   ├── moderation_log.py         # Append-only audit trail
    │   ├── broadcast.py              # Broadcaster port + publisher
    │   ├── realtime.py               # WebSocket connection hub
    │   └── reconciliation_service.py # Expiry + member-count repair
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine / config / identity dependencies
        ├── rate_limit.py  # Per-user mutation throttle
        └── routes/        # REST + WebSocket endpoints
"""

__version__ = "0.1.0"
