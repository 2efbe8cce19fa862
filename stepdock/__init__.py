"""
stepdock - Docker execution backend for pipeline steps

Provisions a run's network and volumes, runs each step as a container,
streams its output and tears everything down again.
"""

__version__ = "0.1.0"

__all__ = ["DockerEngine", "StepdockConfig", "load_config", "get_stepdock_home"]

from .config import StepdockConfig, load_config, get_stepdock_home
from .engine import DockerEngine
