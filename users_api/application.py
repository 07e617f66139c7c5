"""Application factory wiring the store, verifier and telemetry together."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .auth import PasswordVerifier
from .config import Settings, load_settings
from .database import Database
from .telemetry import NullTelemetrySink, TelemetrySink

logger = logging.getLogger("users_api.application")


def build_database(
    settings: Settings,
    telemetry: Optional[TelemetrySink] = None,
    verifier: Optional[PasswordVerifier] = None,
) -> Database:
    database = Database(
        settings.database_path,
        telemetry=telemetry,
        verifier=verifier,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def create_application(
    *,
    settings: Optional[Settings] = None,
    telemetry: Optional[TelemetrySink] = None,
) -> FastAPI:
    """Create the ASGI application.

    ``telemetry`` is owned by the caller; pass the sink produced by
    :func:`users_api.telemetry.open_telemetry` so exporters are flushed when
    the process exits.
    """

    if settings is None:
        settings = load_settings()
    if telemetry is None:
        telemetry = NullTelemetrySink()

    verifier = PasswordVerifier(telemetry, rounds=settings.bcrypt_rounds)
    database = build_database(settings, telemetry, verifier)
    return create_app(database=database, verifier=verifier, telemetry=telemetry)


__all__ = ["build_database", "create_application"]
