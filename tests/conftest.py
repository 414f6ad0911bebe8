"""Pytest configuration and shared fixtures."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from storyloom.storage import StoryStore
from storyloom.storage.models import Story


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def store() -> Iterator[StoryStore]:
    """In-memory story store, closed after the test."""
    s = StoryStore()
    yield s
    s.close()


@pytest.fixture
def story(store: StoryStore) -> Story:
    """A stored story on the main branch."""
    s = Story(title="The Lighthouse")
    store.insert(s)
    return s
