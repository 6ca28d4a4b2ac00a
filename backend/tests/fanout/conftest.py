"""Fixtures for fan-out tests."""

import pytest

from fakes import FakeLink


@pytest.fixture
def fake_link() -> FakeLink:
    """A connected FakeLink."""
    return FakeLink()
