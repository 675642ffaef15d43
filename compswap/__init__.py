"""
compswap - Resumable batch component replacement

Replaces one component with another inside stored pipeline definitions and
project templates, one scheduler tick at a time, leaving an audit record for
every definition it touches.
"""

__version__ = "0.1.0"


__all__ = ["CompswapConfig", "load_config", "get_compswap_home"]

from .config import CompswapConfig, load_config, get_compswap_home
