"""aido - do things with AI in your terminal."""

__version__ = "0.1.0"
__author__ = "Andy Salerno"

from aido.config import Config
from aido.engine import Engine, TurnResult

__all__ = ["Config", "Engine", "TurnResult", "__version__"]
