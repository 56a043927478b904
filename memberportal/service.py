"""Application factory for the portal tracking and admission endpoints."""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import FastAPI

from .api import register_api_routes, register_error_handlers
from .config import PortalSettings, load_settings
from .database import Database
from .disclaimer import DisclaimerService
from .geo import GeoResolver, server_geo_resolver
from .provisioning import UserProvisioner
from .tracking import ActivityRecorder, LoginRecorder

logger = logging.getLogger("memberportal.service")


def _initialise_database(database: Database) -> Database:
    database.initialize()
    return database


def create_app(
    *,
    settings: PortalSettings | None = None,
    database: Database | None = None,
    geo_resolver: GeoResolver | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the portal endpoints."""

    config = settings or load_settings()
    db = _initialise_database(database or Database(config.database_path))
    resolver = geo_resolver or server_geo_resolver(timeout=config.server_geo_timeout)

    app = FastAPI(
        title="Member Portal API",
        version="0.1.0",
        description="Login tracking, activity heartbeats and disclaimer acceptance for the member portal.",
    )
    app.state.settings = config
    app.state.database = db

    register_error_handlers(app)
    register_api_routes(
        app,
        db,
        login_recorder=LoginRecorder(db, resolver),
        activity_recorder=ActivityRecorder(db),
        disclaimers=DisclaimerService(db, window=timedelta(days=config.disclaimer_window_days)),
        provisioner=UserProvisioner(
            db,
            default_role=config.default_role,
            extra_domains=config.allowed_domains,
        ),
    )

    logger.debug("Portal API initialised with database %s", db.path)
    return app


__all__ = ["create_app"]
