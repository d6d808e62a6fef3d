"""Training VM provisioner application."""

from .main import create_app
from .settings import ProvisionerSettings

__all__ = ["create_app", "ProvisionerSettings"]
