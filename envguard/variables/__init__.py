"""Variable Store: per-environment variables, encrypted at rest when secret."""
from .variable_store import VariableStore, Variable

__all__ = ["VariableStore", "Variable"]
