from .config_loader import ConfigLoader, require_env

__all__ = ["ConfigLoader", "require_env"]
