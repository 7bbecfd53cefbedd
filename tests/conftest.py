"""Shared fixtures."""
import pytest

from fakes import NOW, FakeMessenger, FakeStore


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def clock():
    return lambda: NOW
