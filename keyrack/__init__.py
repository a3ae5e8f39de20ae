"""
keyrack - Vertex AI credential provisioning

Creates or selects Google Cloud projects, issues service-account and API
keys for them in parallel, and uploads the results to an object store.
"""

__version__ = "0.1.0"


__all__ = ["KeyrackConfig", "load_config", "get_keyrack_home"]

from .config import KeyrackConfig, load_config, get_keyrack_home
