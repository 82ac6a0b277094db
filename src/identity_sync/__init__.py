"""identity_sync."""

from .monitoring.logger import configure_logger

# Console logging by default; create_app reconfigures with the configured level
configure_logger()
