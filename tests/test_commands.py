"""Tests for storage/commands.py - subprocess helpers and the dry-run gate.

This test suite covers:
- run_or_simulate() under dry-run and real runs
- run_mutating() command routing and sudo escalation
- run_command() logging and error propagation
- Output tail and failure formatting helpers
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from nixos_provisioner.storage import commands
from nixos_provisioner.storage.commands import needs_privilege_escalation


class TestRunOrSimulate:
    """Tests for run_or_simulate()."""

    def test_dry_run_skips_action(self, dry_ctx, dry_run_messages):
        """Test the action is never called under dry-run."""
        action = Mock()

        result = commands.run_or_simulate(dry_ctx, "wipe /dev/sda", action)

        action.assert_not_called()
        assert result.returncode == 0
        assert dry_run_messages() == ["DRY-RUN: would perform: wipe /dev/sda"]

    def test_real_run_returns_action_value(self, ctx, dry_run_messages):
        """Test the action runs and its value is returned."""
        action = Mock(return_value="done")

        result = commands.run_or_simulate(ctx, "wipe /dev/sda", action)

        action.assert_called_once_with()
        assert result == "done"
        assert dry_run_messages() == []

    def test_action_errors_propagate(self, ctx):
        """Test exceptions from the action are not swallowed."""
        with pytest.raises(OSError):
            commands.run_or_simulate(ctx, "write file", Mock(side_effect=OSError("denied")))


class TestRunMutating:
    """Tests for run_mutating()."""

    @patch("nixos_provisioner.storage.commands.run_command")
    def test_runs_command_without_check(self, mock_run, ctx):
        """Test the command runs with check=False."""
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="busy")

        result = commands.run_mutating(ctx, ["partprobe", "/dev/sda"], cwd="/tmp")

        mock_run.assert_called_once_with(["partprobe", "/dev/sda"], check=False, cwd="/tmp")
        assert result.returncode == 1

    @patch("nixos_provisioner.storage.commands.run_command")
    def test_dry_run_logs_command_line(self, mock_run, dry_ctx, dry_run_messages):
        """Test the simulated line shows the shell-quoted command."""
        commands.run_mutating(dry_ctx, ["parted", "-s", "/dev/sda", "mkpart", "My Disk"])

        mock_run.assert_not_called()
        assert dry_run_messages() == [
            "DRY-RUN: would perform: parted -s /dev/sda mkpart 'My Disk'"
        ]


class TestPrivilegeEscalation:
    """Tests for privileged() and escalation in run_mutating()."""

    def test_unprivileged_user_gets_sudo(self, run_as_root):
        run_as_root.return_value = True

        assert commands.privileged(["parted", "-s", "/dev/sda", "print"]) == [
            "sudo", "parted", "-s", "/dev/sda", "print",
        ]

    def test_root_runs_directly(self):
        assert commands.privileged(["mkfs.fat", "/dev/sda1"]) == ["mkfs.fat", "/dev/sda1"]

    def test_never_doubles_sudo(self, run_as_root):
        run_as_root.return_value = True

        assert commands.privileged(["sudo", "umount", "/mnt"]) == ["sudo", "umount", "/mnt"]

    @patch("nixos_provisioner.storage.commands.os.geteuid")
    def test_needs_escalation_follows_euid(self, mock_geteuid):
        """Test only a non-root effective uid asks for sudo."""
        mock_geteuid.return_value = 1000
        assert needs_privilege_escalation() is True

        mock_geteuid.return_value = 0
        assert needs_privilege_escalation() is False

    @patch("nixos_provisioner.storage.commands.run_command")
    def test_run_mutating_escalates(self, mock_run, ctx, run_as_root):
        run_as_root.return_value = True
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        commands.run_mutating(ctx, ["partprobe", "/dev/sda"])

        mock_run.assert_called_once_with(["sudo", "partprobe", "/dev/sda"], check=False, cwd=None)

    @patch("nixos_provisioner.storage.commands.run_command")
    def test_run_mutating_without_escalation(self, mock_run, ctx, run_as_root):
        run_as_root.return_value = True

        commands.run_mutating(ctx, ["git", "status"], escalate=False)

        mock_run.assert_called_once_with(["git", "status"], check=False, cwd=None)

    def test_dry_run_line_shows_sudo(self, dry_ctx, run_as_root, dry_run_messages):
        run_as_root.return_value = True

        commands.run_mutating(dry_ctx, ["mkfs.fat", "-F", "32", "/dev/sda1"])

        assert dry_run_messages() == [
            "DRY-RUN: would perform: sudo mkfs.fat -F 32 /dev/sda1"
        ]


class TestRunCommand:
    """Tests for run_command()."""

    def test_captures_text_output(self, mock_subprocess_success):
        """Test subprocess.run is called with text capture."""
        mock_subprocess_success.return_value = Mock(returncode=0, stdout="ok\n", stderr="")

        result = commands.run_command(["lsblk", "-J"])

        mock_subprocess_success.assert_called_once_with(
            ["lsblk", "-J"], check=True, text=True, capture_output=True, cwd=None
        )
        assert result.stdout == "ok\n"

    def test_stringifies_arguments(self, mock_subprocess_success, tmp_path):
        """Test Path arguments are converted to strings."""
        commands.run_command(["ls", tmp_path], check=False)

        args = mock_subprocess_success.call_args[0][0]
        assert args == ["ls", str(tmp_path)]

    def test_called_process_error_propagates(self, mock_subprocess_failure):
        """Test failures raise when check is set."""
        with pytest.raises(subprocess.CalledProcessError):
            commands.run_command(["false"])

    def test_logs_command(self, mock_subprocess_success, log_records):
        """Test the command line is logged at DEBUG."""
        commands.run_command(["sync"])

        messages = [record["message"] for record in log_records]
        assert "Running command: sync" in messages
        assert "Command completed with return code 0" in messages


class TestOutputHelpers:
    """Tests for tail and formatting helpers."""

    def test_tail_lines_keeps_last_non_empty(self):
        """Test blank lines are dropped before taking the tail."""
        text = "one\n\ntwo\nthree\n   \nfour\n"

        assert commands.tail_lines(text, 2) == ["three", "four"]

    def test_tail_lines_shorter_than_count(self):
        """Test short output is returned whole."""
        assert commands.tail_lines("only\n", 10) == ["only"]

    def test_tail_lines_empty(self):
        """Test empty and None output."""
        assert commands.tail_lines("", 5) == []
        assert commands.tail_lines(None, 5) == []
        assert commands.tail_lines("a\nb", 0) == []

    def test_combined_output(self):
        """Test stdout and stderr are joined."""
        result = Mock(stdout="out\n", stderr="err\n")

        assert commands.combined_output(result) == "out\nerr"

    def test_combined_output_skips_empty(self):
        """Test missing streams are ignored."""
        assert commands.combined_output(Mock(stdout=None, stderr="err")) == "err"

    def test_format_command_failure(self):
        """Test failure summary includes command, code and streams."""
        result = Mock(returncode=1, stdout="", stderr="Error: device busy\n")

        message = commands.format_command_failure(
            "Partitioning failed", ["parted", "-s", "/dev/sda", "print"], result
        )

        assert message == (
            "Partitioning failed (command: parted -s /dev/sda print; exit code: 1; "
            "stderr: Error: device busy)"
        )

    def test_display_command_quotes(self):
        """Test arguments with spaces are quoted."""
        assert commands.display_command(["echo", "a b"]) == "echo 'a b'"
