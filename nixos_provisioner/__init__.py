"""Provisioning orchestrator for NixOS flake configuration repositories."""

from nixos_provisioner.__version__ import __version__

__all__ = ["__version__"]
