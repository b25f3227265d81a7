"""Pytest fixtures for agent_safeguards tests."""

import subprocess
import sys
from pathlib import Path

# Add src directory to path to allow imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from datetime import datetime, timezone
from typing import Dict

import pytest

from agent_safeguards.config import PipelineConfig
from agent_safeguards.coordination import StatusCoordinator
from agent_safeguards.git import GitRepository
from agent_safeguards.models import Agent
from agent_safeguards.scheduler import PhaseScheduler
from agent_safeguards.snapshots import SnapshotStore
from agent_safeguards.store import FileSystemStore, MemoryStore
from agent_safeguards.tasks import FakeClock


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=str(repo), capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def write_files(repo: Path, files: Dict[str, str]) -> None:
    for rel, content in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def commit_files(repo: Path, files: Dict[str, str], message: str) -> str:
    """Write ``files``, commit them and return the new HEAD sha."""
    write_files(repo, files)
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A real git repository with one commit and ``.safeguards`` ignored."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.name", "Safeguard Tests")
    git(repo, "config", "user.email", "tests@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "checkout", "-q", "-b", "main")
    commit_files(repo, {
        ".gitignore": ".safeguards/\n",
        "README.md": "# project\n",
        "package.json": '{"name": "project", "version": "1.0.0"}\n',
        "src/app.py": "def main():\n    return 1\n",
    }, "Initial commit")
    return repo


@pytest.fixture
def shared_store(git_repo) -> FileSystemStore:
    return FileSystemStore(git_repo / ".safeguards")


@pytest.fixture
def snapshot_store(git_repo, shared_store) -> SnapshotStore:
    return SnapshotStore(
        shared_store, git_repo, GitRepository(git_repo),
        manifest_files=["package.json"],
        exclude=[".safeguards"],
    )


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc))


@pytest.fixture
def coordinator(memory_store) -> StatusCoordinator:
    return StatusCoordinator(memory_store, freshness_window=300)


@pytest.fixture
def three_agent_pipeline() -> PipelineConfig:
    """schema -> services -> hooks, all in the GREEN phase."""
    return PipelineConfig(
        phases=["RED", "GREEN", "REFACTOR"],
        agents={
            "schema": Agent(name="schema", phase="GREEN"),
            "services": Agent(name="services", phase="GREEN", depends_on=("schema",),
                              scope=("src/services/**",)),
            "hooks": Agent(name="hooks", phase="GREEN", depends_on=("services",)),
        },
    )


@pytest.fixture
def scheduler(three_agent_pipeline, coordinator, fake_clock) -> PhaseScheduler:
    return PhaseScheduler(three_agent_pipeline, coordinator, fake_clock)
