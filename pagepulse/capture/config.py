"""Configuration system for PagePulse.

This module loads a YAML configuration file, applies the override block for
the active environment and builds the per-component configuration objects.
The active environment comes from the caller, then the PAGEPULSE_ENV
environment variable, then ``development``.

There is no process-wide configuration cache: the service loads a config once
at start up and passes the resulting component configs to each component.
"""

import os
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from .browser_factory import BrowserConfig
from .session_pool import PoolConfig
from .timeouts import TimeoutConfig
from .orchestrator import OrchestratorConfig
from .batch import BatchConfig
from ..admission.controller import AdmissionConfig

logger = logging.getLogger(__name__)

ENV_VAR = "PAGEPULSE_ENV"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "pagepulse.yaml"
VALID_ENVIRONMENTS = {'production', 'staging', 'development', 'test'}


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or invalid."""
    pass


def _build(cls, section: Dict[str, Any], name: str):
    """Instantiate a dataclass config from a section, rejecting unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}' section: {sorted(unknown)}")
    try:
        return cls(**section)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid '{name}' section: {e}")


class PagePulseConfig(BaseModel):
    """Root configuration."""

    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Root log level for the CLI")
    browser: Dict[str, Any] = Field(default_factory=dict, description="Browser launch settings")
    pool: Dict[str, Any] = Field(default_factory=dict, description="Session pool settings")
    timeouts: Dict[str, Any] = Field(default_factory=dict, description="Timeout engine settings")
    admission: Dict[str, Any] = Field(default_factory=dict, description="Admission settings")
    orchestrator: Dict[str, Any] = Field(default_factory=dict, description="Run settings")
    batch: Dict[str, Any] = Field(default_factory=dict, description="Batch settings")
    persistence: Dict[str, Any] = Field(default_factory=dict, description="Result store settings")
    environments: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Environment-specific overrides"
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in VALID_ENVIRONMENTS:
            raise ValueError(f"Environment must be one of: {VALID_ENVIRONMENTS}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    def section(self, name: str) -> Dict[str, Any]:
        """Return a section with the active environment's overrides applied."""
        config = dict(getattr(self, name))
        overrides = self.environments.get(self.environment, {})
        if name in overrides:
            config.update(overrides[name] or {})
        return config

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @property
    def is_cloud(self) -> bool:
        return bool(os.environ.get('RENDER') or os.environ.get('HEROKU'))

    def environment_multiplier(self) -> float:
        """Timeout multiplier for the hosting environment."""
        if self.is_production or self.is_cloud:
            return 1.3
        if self.environment == 'staging':
            return 1.1
        return 0.9

    def get_browser_config(self) -> BrowserConfig:
        section = self.section('browser')
        try:
            return BrowserConfig(**section)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid 'browser' section: {e}")

    def get_pool_config(self) -> PoolConfig:
        return _build(PoolConfig, self.section('pool'), 'pool')

    def get_timeout_config(self) -> TimeoutConfig:
        section = self.section('timeouts')
        section.setdefault('environment_multiplier', self.environment_multiplier())
        return _build(TimeoutConfig, section, 'timeouts')

    def get_admission_config(self) -> AdmissionConfig:
        return _build(AdmissionConfig, self.section('admission'), 'admission')

    def get_orchestrator_config(self) -> OrchestratorConfig:
        section = self.section('orchestrator')
        if section.get('low_resource') is None:
            section['low_resource'] = self.is_production or bool(os.environ.get('RENDER'))
        return _build(OrchestratorConfig, section, 'orchestrator')

    def get_batch_config(self) -> BatchConfig:
        return _build(BatchConfig, self.section('batch'), 'batch')

    def get_persistence_settings(self) -> Dict[str, Any]:
        section = self.section('persistence')
        section.setdefault('backend', 'memory')
        return section


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environment: Optional[str] = None,
) -> PagePulseConfig:
    """Load configuration from a YAML file.

    A missing default file yields the built-in defaults; a missing explicit
    path is an error.

    Args:
        config_path: Path to the YAML file. Defaults to config/pagepulse.yaml
        environment: Environment name overriding PAGEPULSE_ENV

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    current_env = environment or os.environ.get(ENV_VAR)
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    config_data: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Top level of {path} must be a mapping")
    elif config_path:
        raise ConfigurationError(f"Configuration file not found: {path}")
    else:
        logger.debug(f"No configuration file at {path}, using defaults")

    if current_env:
        config_data['environment'] = current_env

    try:
        config = PagePulseConfig(**config_data)
    except ValueError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}")

    logger.debug(f"Loaded configuration for environment '{config.environment}'")
    return config
