"""Version information for nixos-provisioner."""

__version__ = "3.0.0"
