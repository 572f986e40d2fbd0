from civicgate.config.config import Config

__all__ = ["Config"]
