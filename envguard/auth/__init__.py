from .identity import CallerIdentity, get_caller, require_identity, resolve_bearer_token

__all__ = ["CallerIdentity", "get_caller", "require_identity", "resolve_bearer_token"]
