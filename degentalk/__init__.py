"""
Degentalk — Forum, XP and DGT Economy Backend
===============================================
A crypto-native community forum: threads and posts earn XP and levels,
users tip and rain an internal currency (DGT) on each other, and DGT is
bought and cashed out through the CCPayment gateway.

Package layout::

    degentalk/
    ├── config.py          # YAML → typed infrastructure config
    ├── constants.py       # XP curve and level maths
    ├── errors.py          # Domain error hierarchy → JSON envelope
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default settings, XP actions, levels, flags
    ├── engine/
    │   ├── economy.py     # Economy config schema + micro-DGT maths
    │   ├── xp_actions.py  # XP action keys and default award rules
    │   ├── multipliers.py # Role × forum multiplier pipeline
    │   └── cache.py       # In-memory config cache + PG LISTEN/NOTIFY
    ├── services/          # Forum, XP, wallet, tips, payments, admin, ...
    └── api/
        ├── main.py        # FastAPI app + error envelope
        ├── auth.py        # Register / login → JWT
        ├── deps.py        # Engine, cache and auth dependencies
        ├── rate_limit.py  # Sliding-window admin and wallet throttles
        └── routes/        # Public, user and admin REST endpoints
"""

__version__ = "0.1.0"
