"""Shared fixtures for the runner cleanup tests."""

from typing import List

import pytest

import delete_gitlab_runners as glrc
from fakes import FakeSession, make_settings


@pytest.fixture
def settings() -> glrc.Settings:
    return make_settings()


@pytest.fixture
def patch_session(monkeypatch: pytest.MonkeyPatch):
    """Make requests.Session() inside main() return the given FakeSession."""
    created: List[FakeSession] = []

    def install(session: FakeSession) -> FakeSession:
        def factory() -> FakeSession:
            created.append(session)
            return session

        monkeypatch.setattr(glrc.requests, "Session", factory)
        return session

    install.created = created  # type: ignore[attr-defined]
    return install
