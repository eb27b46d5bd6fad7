"""Unit tests for __init__.py module."""

from unittest.mock import patch

import transcache
from transcache import __version__, main


class TestInit:
    """Test __init__.py functionality."""

    def test_main_function_calls_server_main(self):
        """Test that main() calls server.main()."""
        with patch("transcache.server.main") as mock_server_main:
            main()
            mock_server_main.assert_called_once()

    def test_version_attribute_exists(self):
        """Test that __version__ attribute is accessible."""
        assert isinstance(__version__, str)

    def test_public_api(self):
        """Test that every name in __all__ is importable."""
        for name in transcache.__all__:
            assert hasattr(transcache, name), name
        assert "QuotaManager" in transcache.__all__
        assert "EncryptionEngine" in transcache.__all__
