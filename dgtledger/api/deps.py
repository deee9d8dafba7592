"""
dgtledger.api.deps — FastAPI dependency injection
==================================================

Bearer tokens are HS256 JWTs issued by the platform's auth service.  The
claims the ledger reads::

    sub           user id (string)
    is_admin      bool
    is_developer  bool
    level         int — forum level, used by the feature gates
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from dgtledger.config import EconomyConfig, load_config
from dgtledger.database.engine import create_db_engine
from dgtledger.services.action_engine import EconomyEngine
from dgtledger.services.collaborators import HttpLevelingService, NullLevelingService
from dgtledger.services.gateway import HttpSettlementGateway, UnconfiguredGateway
from dgtledger.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "dgt-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> EconomyConfig:
    path = Path(os.getenv("DGT_CONFIG_PATH", "config.yaml"))
    if not path.exists():
        logger.warning("%s not found — using built-in economy defaults", path)
        return EconomyConfig.default()
    return load_config(path)


@lru_cache(maxsize=1)
def get_economy() -> EconomyEngine:
    cfg = get_config()
    gateway_url = os.getenv("GATEWAY_BASE_URL", "").strip()
    leveling_url = os.getenv("LEVELING_BASE_URL", "").strip()
    gateway = (
        HttpSettlementGateway(gateway_url, os.getenv("GATEWAY_API_KEY", ""))
        if gateway_url else UnconfiguredGateway()
    )
    leveling = HttpLevelingService(leveling_url) if leveling_url else NullLevelingService()
    return EconomyEngine(get_engine(), cfg, gateway=gateway, leveling=leveling)


def get_wallet_service(
    economy: Annotated[EconomyEngine, Depends(get_economy)],
) -> WalletService:
    return WalletService(
        economy.store,
        economy.guard,
        minor_units_per_dgt=economy.config.minor_units_per_dgt,
        usd_cents_per_dgt=economy.config.usd_cents_per_dgt,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _decode(authorization: str) -> dict:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    try:
        payload["user_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
    return payload


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict | None:
    """Token payload, or None for anonymous requests."""
    if not authorization:
        return None
    return _decode(authorization)


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return the user payload. Raises 401 if absent/invalid."""
    if not authorization:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return _decode(authorization)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401/403."""
    payload = get_current_user(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload
