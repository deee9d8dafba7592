"""
dgtledger.database.engine — Database Connection & Async Helper
===============================================================

**Why this file exists:**
The ledger services are plain synchronous SQLAlchemy code: a settlement is
one ``with Session(engine)`` block, easy to read and easy to reason about
atomically.  The HTTP layer and the settlement gateway, however, live on an
``asyncio`` event loop.

The bridge between the two is :func:`run_db`:

    1. A route handler (async) needs to move money.
    2. It calls ``await run_db(engine_method, arg1, arg2)``.
    3. ``run_db`` ships the synchronous call to a **thread pool** via
       ``asyncio.to_thread()``.
    4. The DB work happens on a background thread — the event loop stays free.

Usage::

    from dgtledger.database.engine import create_db_engine, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    store = LedgerStore(engine)

    wallet = await run_db(store.get_wallet, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    The connection pool is sized for a single API node:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every ledger call made from async code (routes, gateway callbacks, the
    timeout sweeper) goes through this wrapper::

        result = await run_db(store.settle, tx_id)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
