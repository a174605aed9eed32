"""Registry providers and the manager that selects between them."""

from docked.services.registry.base import Credentials, DigestResult, RegistryProvider
from docked.services.registry.manager import RegistryManager

__all__ = ["Credentials", "DigestResult", "RegistryProvider", "RegistryManager"]
