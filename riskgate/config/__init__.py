from riskgate.config.config import Config

__all__ = ["Config"]
