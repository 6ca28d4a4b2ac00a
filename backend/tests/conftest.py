"""Pytest configuration shared by all test packages."""

import asyncio

import pytest


@pytest.fixture
def event_loop_policy():
    """Run async tests on the default asyncio policy (uvicorn's loop)."""
    return asyncio.DefaultEventLoopPolicy()
