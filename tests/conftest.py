"""Shared fixtures for gitdocs tests."""

import pytest
from dulwich.repo import Repo as DulwichRepo

from gitdocs import Repository


@pytest.fixture
def empty_repo(tmp_path):
    """A working-directory repository with no commits and no remote."""
    p = tmp_path / "empty"
    DulwichRepo.init(str(p), mkdir=True).close()
    repo = Repository(str(p), author="Tester", email="tester@example.com")
    yield repo
    repo.close()


@pytest.fixture
def remote(tmp_path):
    """An empty bare repository standing in for the shared remote."""
    p = str(tmp_path / "remote.git")
    DulwichRepo.init_bare(p, mkdir=True).close()
    return p


@pytest.fixture
def local(tmp_path, remote):
    """First participant: a clone of *remote*."""
    repo = Repository.clone(str(tmp_path / "local"), remote, author="Local", email="local@example.com")
    yield repo
    repo.close()


@pytest.fixture
def other(tmp_path, remote):
    """Second participant: another clone of *remote*."""
    repo = Repository.clone(str(tmp_path / "other"), remote, author="Other", email="other@example.com")
    yield repo
    repo.close()
