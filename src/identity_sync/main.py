from textwrap import dedent

import pydantic
from fastapi import FastAPI
from fastapi.routing import APIRoute
from loguru import logger

from identity_sync.engine import IdentitySyncEngine
from identity_sync.errors import IdentitySyncError
from identity_sync.errors import handle_broad_exceptions
from identity_sync.errors import handle_identity_sync_errors
from identity_sync.errors import handle_pydantic_validation_errors
from identity_sync.monitoring.logger import configure_logger
from identity_sync.routes.routes_health import ROUTER_HEALTH
from identity_sync.routes.routes_schedule import ROUTER_SCHEDULE
from identity_sync.routes.routes_schema import ROUTER_SCHEMA
from identity_sync.routes.routes_sync import ROUTER_SYNC
from identity_sync.routes.routes_users import ROUTER_USERS
from identity_sync.settings import Settings


def create_app(settings: Settings | None = None, engine: IdentitySyncEngine | None = None) -> FastAPI:
    """Create a FastAPI application.

    Configuration is loaded from environment variables (or a local .env file) via
    pydantic-settings. Without ``identity_db_connection_string`` the engine keeps
    everything in memory.
    """
    settings = settings or Settings()

    configure_logger(settings.log_level)

    logger.info(
        "Configuration loaded successfully",
        database_configured=bool(settings.identity_db_connection_string),
        directory_configured=bool(settings.directory_tenant_id and settings.directory_client_id),
        ldap_configured=bool(settings.ldap_url and settings.ldap_base_dn),
        scheduler_enabled=settings.enable_scheduler,
        default_timezone=settings.default_timezone,
    )

    app = FastAPI(
        title="Identity Sync API",
        version="v1",
        description=dedent(
            """
        Synchronizes user identities from a directory service and LDAP, accepts uploaded
        and manually entered records, and serves a unified view across all sources.

        | Area | Notes |
        | --- | --- |
        | Sync | Manual and scheduled pulls, one job per source at a time |
        | Schema | New attributes are discovered and added as columns automatically |
        | Users | Unified listing with cross-source email conflicts |
        """
        ),
        generate_unique_id_function=custom_generate_unique_id,
    )
    app.state.settings = settings
    app.state.engine = engine or IdentitySyncEngine.from_settings(settings)

    app.include_router(ROUTER_HEALTH, prefix="/api")
    app.include_router(ROUTER_SYNC, prefix="/api")
    app.include_router(ROUTER_SCHEDULE, prefix="/api")
    app.include_router(ROUTER_USERS, prefix="/api")
    app.include_router(ROUTER_SCHEMA, prefix="/api")

    @app.on_event("startup")
    async def startup_engine():
        """Open the database, create source tables and start the scheduler."""
        await app.state.engine.initialize()

    @app.on_event("shutdown")
    async def shutdown_engine():
        """Stop triggers and the retry loop, then close the database."""
        await app.state.engine.shutdown()

    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=IdentitySyncError,
        handler=handle_identity_sync_errors,
    )
    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    if route.tags:
        return f"{route.tags[0]}-{route.name}"
    return route.name


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
