"""
Configuration layer

- loader.py - YAML file -> validated EngineConfig
- validator.py - cross-field validation rules
"""

from .loader import load_config_file, load_config_data, find_config_path
from .validator import ConfigValidator

__all__ = ["load_config_file", "load_config_data", "find_config_path", "ConfigValidator"]
