"""Tests for services/machines.py - machine catalog discovery."""

import pytest

from nixos_provisioner.domain.models import FailureKind, MachineDescriptor
from nixos_provisioner.exceptions import DiscoveryError
from nixos_provisioner.services import machines


class TestDiscoverMachines:
    """Tests for discover_machines()."""

    def test_sorted_without_templates(self, machines_root):
        found = machines.discover_machines(machines_root / "machines")

        assert [m.name for m in found] == ["elara", "magos"]
        assert found[0] == MachineDescriptor("elara", machines_root / "machines" / "elara")

    def test_ignores_files(self, machines_root):
        (machines_root / "machines" / "README.md").write_text("docs")

        found = machines.discover_machines(str(machines_root / "machines"))

        assert [m.name for m in found] == ["elara", "magos"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(DiscoveryError, match="does not exist") as exc_info:
            machines.discover_machines(tmp_path / "machines")

        assert exc_info.value.root_dir == str(tmp_path / "machines")

    def test_only_templates(self, tmp_path):
        (tmp_path / "machines" / "templates").mkdir(parents=True)

        with pytest.raises(DiscoveryError, match="No machine configurations"):
            machines.discover_machines(tmp_path / "machines")


class TestDiscoverMachinesResult:
    """Tests for discover_machines_result()."""

    def test_success(self, machines_root):
        result = machines.discover_machines_result(machines_root / "machines")

        assert result.ok
        assert [m.name for m in result.value] == ["elara", "magos"]

    def test_failure_kind(self, tmp_path):
        result = machines.discover_machines_result(tmp_path)

        assert not result.ok
        assert result.failure_kind is FailureKind.DISCOVERY


class TestFindMachine:
    """Tests for find_machine()."""

    def test_found(self, machines_root):
        found = machines.discover_machines(machines_root / "machines")

        assert machines.find_machine(found, "magos").name == "magos"

    def test_unknown_lists_available(self, machines_root):
        found = machines.discover_machines(machines_root / "machines")

        with pytest.raises(DiscoveryError, match="available: elara, magos"):
            machines.find_machine(found, "templates")
