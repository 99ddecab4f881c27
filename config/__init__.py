from .config_loader import config

__all__ = ['config']
