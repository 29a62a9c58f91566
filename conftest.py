"""Pytest configuration for Soft Lifecycle Toolkit."""

import pytest


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Add custom markers
    config.addinivalue_line("markers", "cascade: mark test as exercising cascades")


# Configure pytest to ignore certain warnings
pytest.mark.filterwarnings("ignore::pytest.PytestCollectionWarning")
