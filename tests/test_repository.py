"""Tests for services/repository.py - staging the configuration repository.

This test suite covers:
- Clone command construction
- Replacing stale staging directories
- Clone failures, output tails and cleanup
- Dry-run simulation and placeholder trees
"""

from pathlib import Path
from unittest.mock import Mock

import pytest

from nixos_provisioner.domain.models import FailureKind, StagingStatus
from nixos_provisioner.services import repository
from nixos_provisioner.ui.progress import TaskStatus

REPO_URL = "https://github.com/ex1tium/nix-configurations.git"


@pytest.fixture
def mock_task(mocker):
    """Patch BackgroundTask so no git process is started."""
    task_class = mocker.patch("nixos_provisioner.services.repository.BackgroundTask")
    task = task_class.return_value
    task.returncode = 0
    task.output.return_value = ""
    return Mock(cls=task_class, task=task)


def _progress(status, side_effect=None):
    calls = []

    def progress(ctx, task, label):
        calls.append(label)
        if side_effect:
            side_effect()
        return status

    progress.calls = calls
    return progress


class TestBuildCloneCommand:
    """Tests for build_clone_command()."""

    def test_shallow_single_branch(self):
        command = repository.build_clone_command(REPO_URL, "develop", Path("/tmp/nix-config"))

        assert command == [
            "git", "clone", "--depth", "1", "--single-branch", "--branch", "develop",
            REPO_URL, "/tmp/nix-config",
        ]


class TestStageRepository:
    """Tests for stage_repository()."""

    def test_successful_clone(self, ctx, tmp_path, mock_task):
        target = tmp_path / "nix-config"
        progress = _progress(TaskStatus.SUCCEEDED)

        result = repository.stage_repository(ctx, REPO_URL, "main", target, progress=progress)

        assert result.ok
        staging = result.value
        assert staging.status is StagingStatus.READY
        assert staging.target_dir == target
        assert staging.machines_dir == target / "machines"
        mock_task.cls.assert_called_once_with(
            repository.build_clone_command(REPO_URL, "main", target)
        )
        mock_task.task.start.assert_called_once_with()
        assert progress.calls == [f"Cloning main from {REPO_URL}"]
        mock_task.task.close.assert_called_once_with()

    def test_replaces_stale_directory(self, ctx, tmp_path, mock_task):
        """Test an existing copy is removed before cloning."""
        target = tmp_path / "nix-config"
        (target / "machines" / "old").mkdir(parents=True)
        seen_before_clone = []

        def record():
            seen_before_clone.append(target.exists())

        repository.stage_repository(
            ctx, REPO_URL, "main", target, progress=_progress(TaskStatus.SUCCEEDED, record)
        )

        assert seen_before_clone == [False]

    def test_replaces_stale_file(self, ctx, tmp_path, mock_task):
        target = tmp_path / "nix-config"
        target.write_text("not a directory")

        result = repository.stage_repository(
            ctx, REPO_URL, "main", target, progress=_progress(TaskStatus.SUCCEEDED)
        )

        assert result.ok
        assert not target.exists()

    def test_failed_clone_keeps_tail_and_cleans_up(self, ctx, tmp_path, mock_task):
        """Test a failed clone leaves no partial tree and reports git's last lines."""
        target = tmp_path / "nix-config"
        output = [f"remote: line {i}" for i in range(15)]
        output.append("fatal: Remote branch nope not found in upstream origin")
        mock_task.task.output.return_value = "\n".join(output) + "\n"
        mock_task.task.returncode = 128

        def partial_clone():
            (target / ".git").mkdir(parents=True)

        result = repository.stage_repository(
            ctx, REPO_URL, "nope", target, progress=_progress(TaskStatus.FAILED, partial_clone)
        )

        assert not result.ok
        assert result.failure_kind is FailureKind.REPOSITORY
        assert len(result.diagnostic_tail) == 10
        assert result.diagnostic_tail[-1].startswith("fatal: Remote branch nope")
        assert result.value.status is StagingStatus.FAILED
        assert result.value.diagnostic_tail == list(result.diagnostic_tail)
        assert not target.exists()
        mock_task.task.close.assert_called_once_with()

    def test_git_not_startable(self, ctx, tmp_path, mock_task):
        mock_task.task.start.side_effect = FileNotFoundError("git")

        result = repository.stage_repository(
            ctx, REPO_URL, "main", tmp_path / "nix-config", progress=_progress(TaskStatus.SUCCEEDED)
        )

        assert not result.ok
        assert "Unable to start git" in result.message
        mock_task.task.close.assert_called_once_with()

    def test_interrupt_closes_task(self, ctx, tmp_path, mock_task):
        """Test the output spool is released when the clone is interrupted."""

        def interrupted(ctx, task, label):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            repository.stage_repository(
                ctx, REPO_URL, "main", tmp_path / "nix-config", progress=interrupted
            )

        mock_task.task.close.assert_called_once_with()

    def test_dry_run_creates_placeholder(self, dry_ctx, tmp_path, mock_task, dry_run_messages):
        """Test dry-run logs the clone and lays down a placeholder machine."""
        target = tmp_path / "nix-config"

        result = repository.stage_repository(dry_ctx, REPO_URL, "main", target)

        assert result.ok
        mock_task.cls.assert_not_called()
        assert dry_run_messages() == [
            f"DRY-RUN: would perform: git clone --depth 1 --single-branch --branch main "
            f"{REPO_URL} {target}"
        ]
        placeholder = target / "machines" / "example" / "configuration.nix"
        assert placeholder.read_text() == "{ }\n"

    def test_dry_run_keeps_existing_tree(
        self, dry_ctx, machines_root, mock_task, dry_run_messages
    ):
        result = repository.stage_repository(dry_ctx, REPO_URL, "main", machines_root)

        assert result.ok
        assert (machines_root / "machines" / "elara").is_dir()
        assert not (machines_root / "machines" / "example").exists()
        messages = dry_run_messages()
        assert messages[0] == f"DRY-RUN: would perform: remove {machines_root}"
        assert len(messages) == 2
