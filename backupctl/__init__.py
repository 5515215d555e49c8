"""backupctl - scheduled backup execution engine for Proxmox VE clusters."""

__version__ = "1.0.0"
