"""Provider interfaces and the GitHub implementation.

Key Components:
    - ContentStore: Versioned files, branches, pull requests, external jobs
    - NotificationChannel: User-visible progress log
    - MessageChannel: Message stream used as the agent transport
    - AgentCapability: Request/response interface to an agent
    - GitHubContentStore: PyGithub-backed implementation of the store and
      both channels

Example:
    >>> from issue_forge.providers import GitHubContentStore
    >>> store = GitHubContentStore(token="...", owner="acme", repo="shop", branch="project-42")
    >>> await store.connect()
"""

from issue_forge.providers.base import AgentCapability, ContentStore, MessageChannel, NotificationChannel
from issue_forge.providers.github_rest import GitHubContentStore

__all__ = [
    "AgentCapability",
    "ContentStore",
    "GitHubContentStore",
    "MessageChannel",
    "NotificationChannel",
]
