"""Shared fixtures for taskforge tests."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from taskforge.config import ForgeConfig, clear_config_cache
from taskforge.coordinator import OrchestrationCoordinator
from taskforge.events.store import EventStore
from taskforge.governance.retry import RetryService
from taskforge.models import Repository
from taskforge.task_store import TaskStore

from tests.fakes import InMemoryVcs, RecordingNotifier, ScriptedExecutor, StaticProvisioner


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config(tmp_path):
    """Config rooted in tmp_path with pacing and backoff disabled."""
    cfg = ForgeConfig(
        repo_root=str(tmp_path),
        workspace_root=str(tmp_path / "workspaces"),
    )
    cfg.orchestration.phase_delay_seconds = 0.0
    cfg.retry.initial_delay_seconds = 0.0
    cfg.retry.jitter = 0.0
    return cfg


@pytest.fixture
def store(config):
    return TaskStore(config)


@pytest.fixture
def event_store(config):
    return EventStore(config.events_path)


@pytest.fixture
def vcs():
    return InMemoryVcs()


@pytest.fixture
def executor(vcs):
    return ScriptedExecutor(vcs)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleeps():
    """Delays requested by the code under test (never actually slept)."""
    return []


@pytest.fixture
def repository(store):
    repo = Repository(
        id="repo-api",
        name="api",
        owner_id="user-1",
        clone_url="https://github.example/org/api.git",
        repo_type="backend",
    )
    store.save_repository(repo)
    return repo


@pytest.fixture
def make_task(store, repository):
    """Create a task owned by user-1 on the api repository."""

    def _make(**kwargs):
        kwargs.setdefault("title", "Add health endpoint")
        kwargs.setdefault("owner_id", "user-1")
        kwargs.setdefault("repository_ids", [repository.id])
        kwargs.setdefault("description", "Expose GET /health")
        kwargs.setdefault("credential", "test-task-credential")
        return store.create(**kwargs)

    return _make


@pytest.fixture
def coordinator(config, store, event_store, executor, vcs, notifier, sleeps, tmp_path):
    return OrchestrationCoordinator(
        config,
        store=store,
        events=event_store,
        executor=executor,
        vcs=vcs,
        provisioner=StaticProvisioner(tmp_path / "workspaces"),
        notifier=notifier,
        retry=RetryService(config.retry, sleep=sleeps.append, rng=lambda: 0.5),
        sleep=sleeps.append,
    )


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
