"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every tunable part of the
orchestration engine: the GitHub content store, the agent request channel,
quality gate budgets, execution strategy selection, and event triggers.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_forge.exceptions import ConfigurationError


class GitHubConfig(BaseModel):
    """GitHub content store configuration.

    The token supports ``${ENV}`` interpolation when loaded from YAML:
    - api_token: "${GITHUB_TOKEN}"
    """

    base_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    api_token: str = Field(default="", description="API token used for repository operations")
    default_branch: str = Field(default="main", description="Branch project branches are created from")
    request_timeout: float = Field(default=30.0, gt=0, description="Timeout in seconds for a single API call")


class AgentConfig(BaseModel):
    """Agent request/response channel configuration."""

    mention: str = Field(default="@claude", description="Mention prefix that addresses the agent")
    agent_logins: list[str] = Field(
        default_factory=list,
        description="Logins accepted as agent replies (empty accepts any author echoing the correlation id)",
    )
    poll_interval: float = Field(default=10.0, ge=0, description="Seconds between reply polls")
    max_attempts: int = Field(default=30, ge=1, description="Maximum number of reply polls")
    request_timeout: float = Field(default=30.0, gt=0, description="Timeout in seconds for a single channel call")


class QualityConfig(BaseModel):
    """Quality gate thresholds and iteration budgets."""

    threshold: int = Field(default=95, ge=0, le=100, description="Score at which a candidate passes")
    plan_max_iterations: int = Field(default=5, ge=1, description="Budget for the initial plan")
    dev_plan_max_iterations: int = Field(default=3, ge=1, description="Budget for the development plan")
    research_max_iterations: int = Field(default=3, ge=1, description="Budget for research confirmation")
    verification_max_iterations: int = Field(default=5, ge=1, description="Budget for overall verification")


class ExecutionConfig(BaseModel):
    """Execution strategy configuration for multi-unit phases."""

    mode: Literal["auto", "delegated", "sequential"] = Field(
        default="auto",
        description="auto probes the job runner, delegated always dispatches, sequential never does",
    )
    research_workflow: str = Field(default="research.yml", description="Workflow run for research units")
    development_workflow: str = Field(default="development.yml", description="Workflow run for components")
    job_poll_interval: float = Field(default=30.0, ge=0, description="Seconds between job status polls")
    job_max_wait: float = Field(default=1800.0, gt=0, description="Maximum seconds to wait for a job")


class TriggersConfig(BaseModel):
    """Issue and comment trigger configuration."""

    marker_label: str = Field(default="claude-build", description="Label that opts an issue into the pipeline")
    approval_keywords: list[str] = Field(default_factory=lambda: ["approved", "lgtm"])
    restart_keywords: list[str] = Field(default_factory=lambda: ["restart", "retry"])

    @model_validator(mode="after")
    def normalize_keywords(self) -> TriggersConfig:
        """Store keywords lower-cased; matching is case-insensitive."""
        self.approval_keywords = [k.lower() for k in self.approval_keywords if k.strip()]
        self.restart_keywords = [k.lower() for k in self.restart_keywords if k.strip()]
        return self


class PipelineConfig(BaseModel):
    """Pipeline defaults applied when the plan omits a role list."""

    default_researchers: list[str] = Field(
        default_factory=lambda: ["web-technology-researcher", "ui-trends-researcher", "database-researcher"]
    )
    default_developers: list[str] = Field(
        default_factory=lambda: ["frontend-developer", "backend-developer", "database-administrator"]
    )
    default_verifiers: list[str] = Field(
        default_factory=lambda: ["code-quality-verifier", "security-verifier", "performance-verifier"]
    )
    state_directory: str = Field(default=".forge/state", description="Directory for session state files")


class ForgeSettings(BaseSettings):
    """Main engine settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="FORGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.pipeline.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> ForgeSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            ForgeSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        Args:
            content: String content with placeholders

        Returns:
            Content with environment variables substituted

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are preserved unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
