"""Settings for the identity sync service."""

from typing import Optional

from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the identity sync service.

    [pydantic.BaseSettings](https://docs.pydantic.dev/latest/concepts/pydantic_settings/) reads,
    validates and types configuration values from environment variables.

    This class automatically reads from:
    1. Environment variables (production)
    2. .env file (local development)

    Environment variable names are treated case-insensitively; the canonical names
    used in this project are lowercase (ldap_url, directory_tenant_id, ...).
    """

    # Persistence
    identity_db_connection_string: Optional[str] = None
    """PostgreSQL connection string for the identity stores, schedules and history.
    When unset, everything is kept in memory (development and tests only)."""

    # Directory service (Microsoft Graph)
    directory_tenant_id: Optional[str] = None
    """Tenant ID of the directory whose users are synchronized."""

    directory_client_id: Optional[str] = None
    """App registration client ID used for the client-credentials flow."""

    directory_client_secret: Optional[str] = None
    """App registration client secret used for the client-credentials flow."""

    directory_authority_url: str = "https://login.microsoftonline.com"
    """OAuth authority host; the token endpoint is <authority>/<tenant>/oauth2/v2.0/token."""

    directory_graph_url: str = "https://graph.microsoft.com/v1.0"
    """Graph API base URL."""

    # LDAP
    ldap_url: Optional[str] = None
    """LDAP server URL (ldap:// or ldaps://)."""

    ldap_bind_dn: Optional[str] = None
    """DN used to bind to the LDAP server."""

    ldap_bind_password: Optional[str] = None
    """Password for ldap_bind_dn."""

    ldap_base_dn: Optional[str] = None
    """Search base for user entries."""

    ldap_user_filter: str = "(&(objectClass=person)(mail=*))"
    """LDAP filter selecting user entries; only entries with a mail attribute are useful."""

    ldap_page_size: int = 500
    """Paged-search page size for LDAP queries."""

    connector_timeout_seconds: float = 30.0
    """Network timeout applied to every connector call (connect and read)."""

    # Scheduler
    enable_scheduler: bool = True
    """Start the cron trigger backend and the retry loop on application startup."""

    create_default_schedules: bool = True
    """Create the default daily directory/ldap schedules when none exist."""

    default_timezone: str = "Europe/Berlin"
    """Timezone used for schedules that do not specify one."""

    retry_poll_interval_seconds: float = 30.0
    """How often the retry loop checks for due retries."""

    retry_queue_max_size: int = 100
    """Upper bound on pending retries held in memory."""

    # Logging
    log_level: str = "INFO"
    """Minimum level for the console log sink."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",  # Load from .env file if it exists (local development)
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables not defined in the model
        validate_default=True,
    )
