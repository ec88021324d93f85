"""PocketCoder - orchestration core of an AI coding assistant."""

__version__ = "0.1.0"

from pocketcoder.config import Config

__all__ = ["Config", "__version__"]
