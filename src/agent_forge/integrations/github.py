"""GitHub REST client used for conflict pull requests and repository setup."""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PullRequest:
    number: int
    html_url: str
    head: str = ""
    base: str = ""
    title: str = ""


class GitHubClient:
    """Thin wrapper over the handful of GitHub endpoints the forge needs."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = GITHUB_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitHubError(f"GitHub request {method} {path} failed: {e}") from e
        if not response.is_success:
            raise GitHubError(
                f"GitHub API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    def validate_token(self) -> dict:
        """Return the authenticated user, raising GitHubError for a bad token."""
        return self._request("GET", "/user").json()

    def create_repository(self, name: str, description: str = "", private: bool = True) -> dict:
        payload = {
            "name": name,
            "description": description,
            "private": private,
            "auto_init": False,
        }
        return self._request("POST", "/user/repos", json=payload).json()

    def find_existing_pr(self, repo: str, head: str, base: str) -> PullRequest | None:
        """Open pull request from ``head`` into ``base``, if one exists."""
        owner = repo.split("/", 1)[0]
        # Same-repo PRs are listed under the owner-qualified head.
        for candidate in (f"{owner}:{head}", head):
            response = self._request(
                "GET",
                f"/repos/{repo}/pulls",
                params={"head": candidate, "base": base, "state": "open"},
            )
            items = response.json()
            if items:
                return _to_pull_request(items[0])
        return None

    def create_pull_request(
        self,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        payload = {"title": title, "body": body, "head": head, "base": base}
        try:
            response = self._request("POST", f"/repos/{repo}/pulls", json=payload)
        except GitHubError as e:
            if e.status_code == 422 and "already exists" in str(e):
                existing = self.find_existing_pr(repo, head, base)
                if existing:
                    return existing
            raise
        pr = _to_pull_request(response.json())
        logger.info("Opened PR #%d for %s -> %s in %s", pr.number, head, base, repo)
        return pr

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _to_pull_request(data: dict) -> PullRequest:
    return PullRequest(
        number=data["number"],
        html_url=data["html_url"],
        head=data.get("head", {}).get("ref", ""),
        base=data.get("base", {}).get("ref", ""),
        title=data.get("title", ""),
    )
