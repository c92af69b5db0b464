"""Configuration module for the OCI request gateway."""
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "load_settings"]
