"""Provider registry for remote sync."""

from __future__ import annotations

from typing import TYPE_CHECKING

from collection_sync.sync.github import GitHubProvider
from collection_sync.sync.gitlab import GitLabProvider

if TYPE_CHECKING:
    import httpx

    from collection_sync.sync.base import GitHostProvider

DEFAULT_TIMEOUT = 30.0

PROVIDERS: dict[str, type[GitHubProvider] | type[GitLabProvider]] = {
    "github": GitHubProvider,
    "gitlab": GitLabProvider,
}


def get_provider(
    name: str,
    repository: str,
    token: str,
    branch: str = "main",
    *,
    api_url: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> GitHostProvider:
    """Create a provider for the given host name.

    Raises ValueError if the provider is unknown or the repository/token is empty.
    """
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        msg = f"Unknown provider: {name!r}. Available: {list(PROVIDERS)}"
        raise ValueError(msg)
    if not repository.strip() or not token:
        msg = "Repository and token are required"
        raise ValueError(msg)
    return provider_cls(
        repository, token, branch, api_url=api_url, timeout=timeout, client=client
    )


def list_providers() -> list[str]:
    """Return the list of supported provider names."""
    return list(PROVIDERS.keys())
