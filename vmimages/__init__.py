"""vm-images package."""

__all__ = [
    "builder",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "exceptions",
    "fetcher",
    "models",
    "pve",
    "utils",
]
