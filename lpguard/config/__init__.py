from lpguard.config.config import Settings, env_bool

__all__ = ["Settings", "env_bool"]
