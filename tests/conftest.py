"""Pytest configuration and fixtures for agentroute tests."""

import pytest
from click.testing import CliRunner

from fakes import FakeStore, make_config


@pytest.fixture
def config():
    """Two agents of capacity 1 against acme/widgets."""
    return make_config()


@pytest.fixture
def store():
    """Empty in-memory store with a main branch."""
    return FakeStore()


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()
