"""Configuration management for the election system."""

from .config import SystemConfig, ParameterConfig, BallotConfig, load_config, save_config

__all__ = ['SystemConfig', 'ParameterConfig', 'BallotConfig', 'load_config', 'save_config']
