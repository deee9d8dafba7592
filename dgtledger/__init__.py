"""
DGT Ledger — Economy & Ledger Engine for a community platform
==============================================================
Tracks DGT token balances, applies tip / rain / withdrawal / deposit
operations under cooldowns, rolling caps, fees and burns, and renders one
underlying financial record as a public, owner or admin view.

Package layout::

    dgtledger/
    ├── config.py          # YAML → frozen EconomyConfig
    ├── constants.py       # Categories, balance tiers, level curve, time helpers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # wallets, ledger_transactions, rate_usage, admin_log
    ├── engine/
    │   ├── errors.py      # EconomyError taxonomy
    │   ├── events.py      # EconomicEvent envelope for the leveling service
    │   ├── feature_gate.py # Capability gates + FNV-1a rollout buckets
    │   ├── fees.py        # Integer burn / fee / split / conversion math
    │   └── projector.py   # Anonymous / owner / admin views
    ├── services/
    │   ├── ledger_store.py    # Sole writer of balances; atomic settlement
    │   ├── rate_guard.py      # Cooldowns + rolling caps per (user, action)
    │   ├── action_engine.py   # tip, rain, withdraw, deposit, gateway callbacks
    │   ├── wallet_service.py  # Wallet views + non-monetary admin actions
    │   ├── audit.py           # admin_log helpers
    │   ├── gateway.py         # Settlement gateway client + webhook signatures
    │   ├── collaborators.py   # Leveling, eligibility, exchange-rate interfaces
    │   └── timeout_sweeper.py # Fails gateway transactions that never confirm
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT → viewer, service singletons
        └── routes/        # Wallet, admin and webhook endpoints
"""

__version__ = "0.1.0"
