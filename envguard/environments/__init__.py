"""Environment Registry: named environments that own variables."""
from .environment_registry import EnvironmentRegistry, Environment

__all__ = ["EnvironmentRegistry", "Environment"]
