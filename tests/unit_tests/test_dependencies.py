"""Unit tests for dependencies.py."""

from unittest.mock import MagicMock

from identity_sync.dependencies import get_engine
from identity_sync.dependencies import get_settings


class TestAppStateDependencies:
    """Tests for the app.state accessors."""

    def test_get_settings(self):
        """Settings come from app.state."""
        request = MagicMock()
        request.app.state.settings = "settings"

        assert get_settings(request) == "settings"

    def test_get_engine(self, app, engine):
        """The engine passed to create_app is the one routes receive."""
        request = MagicMock()
        request.app = app

        assert get_engine(request) is engine
        assert get_settings(request) is app.state.settings
