"""Configuration management for the orchestration engine.

Key Components:
    - ForgeSettings: Top-level settings loaded from YAML or environment
    - AgentConfig: Agent request channel polling budget
    - QualityConfig: Quality gate threshold and iteration budgets
    - ExecutionConfig: Delegated vs sequential execution selection
    - TriggersConfig: Marker label and comment keywords

Example:
    >>> from issue_forge.config import ForgeSettings
    >>> settings = ForgeSettings.from_yaml("forge.yaml")
    >>> settings.quality.threshold
    95
"""

from issue_forge.config.settings import (
    AgentConfig,
    ExecutionConfig,
    ForgeSettings,
    GitHubConfig,
    PipelineConfig,
    QualityConfig,
    TriggersConfig,
)

__all__ = [
    "AgentConfig",
    "ExecutionConfig",
    "ForgeSettings",
    "GitHubConfig",
    "PipelineConfig",
    "QualityConfig",
    "TriggersConfig",
]
