"""Proxmox VE host administration chores."""

__version__ = "0.1.0"
