"""Configuration loading and logging setup for dnsagg."""

from .config_parser import parse_config_file, store_config_from
from .config_schema import validate_config
from .logging_config import init_logging

__all__ = ["init_logging", "parse_config_file", "store_config_from", "validate_config"]
