"""Prometheus exporter for Terraform Cloud/Enterprise."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "utils",
    "models",
    "http_client",
    "samples",
    "registry",
    "workspaces",
    "collector",
    "exporter_api",
    "runner",
]
