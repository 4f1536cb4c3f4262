import pytest

from fakes import FakeIssueTracker, FakeVersionControl, make_ctx


@pytest.fixture
def ctx(tmp_path):
    return make_ctx(tmp_path)


@pytest.fixture
def vcs():
    return FakeVersionControl(branch="001-auth", branches=["master"])


@pytest.fixture
def issues():
    return FakeIssueTracker()
