"""Remote platform layer — the adapter contract and its GitHub implementation."""

from changegate.platform.base import RemoteJobState, RemotePlatform
from changegate.platform.github import GitHubPlatform

__all__ = ["GitHubPlatform", "RemoteJobState", "RemotePlatform"]
