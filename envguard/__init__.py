"""EnvGuard: per-environment configuration and secret store with an audit trail."""
__version__ = "1.0.0"
