"""issue-forge: issue-driven, quality-gated multi-agent build orchestration."""

__version__ = "0.3.0"
