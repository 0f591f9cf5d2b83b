"""Configuration, errors and etcd node registration for a streaming cluster."""

__version__ = "0.1.0"

__all__ = ["config", "errors", "etcd_types", "etcd_client"]