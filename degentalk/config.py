"""
degentalk.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for **infrastructure-only** settings (site identity,
API port, admin role name, payment gateway endpoint).  Economy and XP
tuning lives in the database, editable from the admin API.  Secrets
(database URL, JWT secret, CCPayment credentials) come from the
environment.

Usage::

    from degentalk.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.site_name)         # "Degentalk"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_CCPAYMENT_API_URL = "https://ccpayment.com"


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure/identity only.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DegentalkConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    site_name: str
    site_tagline: str

    # API
    api_port: int
    frontend_url: str

    # Role whose members may use /api/admin
    admin_role: str = "admin"

    # CCPayment
    ccpayment_api_url: str = DEFAULT_CCPAYMENT_API_URL


@dataclass(frozen=True, slots=True)
class CCPaymentCredentials:
    app_id: str
    app_secret: str


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> DegentalkConfig:
    """Read *path* and return a :class:`DegentalkConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return DegentalkConfig(
        site_name=raw["site_name"],
        site_tagline=raw["site_tagline"],
        api_port=int(raw["api_port"]),
        frontend_url=raw["frontend_url"],
        admin_role=raw.get("admin_role", "admin"),
        ccpayment_api_url=raw.get("ccpayment_api_url", DEFAULT_CCPAYMENT_API_URL),
    )


def load_ccpayment_credentials() -> CCPaymentCredentials:
    """Read CCPayment credentials from the environment.

    Raises
    ------
    RuntimeError
        If either ``CCPAYMENT_APP_ID`` or ``CCPAYMENT_APP_SECRET`` is unset.
    """
    app_id = os.getenv("CCPAYMENT_APP_ID", "")
    app_secret = os.getenv("CCPAYMENT_APP_SECRET", "")
    if not app_id or not app_secret:
        raise RuntimeError(
            "CCPAYMENT_APP_ID and CCPAYMENT_APP_SECRET must be set to use CCPayment."
        )
    return CCPaymentCredentials(app_id=app_id, app_secret=app_secret)


def configure_logging() -> None:
    """Configure the root logger from ``LOG_LEVEL`` (default INFO)."""
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
