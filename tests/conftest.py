"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for sm_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from sm_mock import MockCredentialResolver, RecordingReporter  # noqa: E402

from smclient.profile import Profile  # noqa: E402
from smclient.profile_store import ProfileStore  # noqa: E402


@pytest.fixture
def credentials() -> MockCredentialResolver:
    return MockCredentialResolver()


@pytest.fixture
def profile(tmp_path: Path, credentials: MockCredentialResolver) -> Profile:
    return Profile(ProfileStore(tmp_path / "profile.json"), credentials)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()
