"""Format-preserving editor for flake.nix inputs and flake.lock follows."""

__version__ = "0.1.0"
