"""Async GitHub REST client used by the deployment engine.

Hides authentication, pagination parameters and the many shapes GitHub
responses come in: every public method returns an ``ApiResponse`` whose
``data`` is already typed, and every failure is raised as a
``DeployerError`` subclass from ``github_deployer.errors``.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from github_deployer import __version__
from github_deployer.errors import (
    AuthInsufficientError,
    AuthRequiredError,
    DeployerError,
    InvalidRequestError,
    NotFoundError,
    RateLimitedError,
    RemoteError,
    TransportError,
)
from github_deployer.github.credentials import CredentialProvider, StaticCredentialProvider
from github_deployer.logging import get_logger
from github_deployer.models import (
    ApiResponse,
    CommitInfo,
    Comparison,
    GitRef,
    RateLimit,
    Release,
    RepoMetadata,
)

log = get_logger("github_deployer.github.client")

DEFAULT_API_URL = "https://api.github.com"
PUBLIC_ARCHIVE_URL = "https://github.com/{owner}/{name}/archive/{ref}.zip"
PAGE_SIZE = 30
API_VERSION = "2022-11-28"
TOKEN_EXPIRATION_HEADER = "github-authentication-token-expiration"

_EXPIRATION_FORMATS = ("%Y-%m-%d %H:%M:%S %Z", "%Y-%m-%d %H:%M:%S %z")


def _parse_expiration(value: str) -> datetime | None:
    for fmt in _EXPIRATION_FORMATS:
        try:
            parsed = datetime.strptime(value.strip(), fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _seg(value: str) -> str:
    return quote(value, safe="")


class GitHubClient:
    """Typed access to the parts of the GitHub API the engine needs."""

    def __init__(
        self,
        credentials: CredentialProvider | None = None,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        rate_limit_warning_threshold: int = 10,
    ) -> None:
        self._credentials = credentials or StaticCredentialProvider()
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._rate_limit_warning_threshold = rate_limit_warning_threshold
        self._client: httpx.AsyncClient | None = None
        self.rate_limit: RateLimit | None = None
        self.token_expires_at: datetime | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self._credentials.get_token())

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                timeout=self._timeout,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                    "User-Agent": f"github-deployer/{__version__}",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._credentials.get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        follow_redirects: bool = True,
    ) -> ApiResponse[Any]:
        """Send a request and normalise the response.

        Redirects are returned as-is (``data`` is None) when
        ``follow_redirects`` is False so callers can read ``location``.
        """
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                headers=self._auth_headers(),
                follow_redirects=follow_redirects,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"Timed out after {self._timeout}s calling GitHub {path}", cause=exc, path=path
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(
                f"Could not reach GitHub ({path}): {exc}", cause=exc, path=path
            ) from exc

        headers = {key.lower(): value for key, value in response.headers.items()}
        self._track_headers(headers)
        status = response.status_code

        if 300 <= status < 400:
            return ApiResponse(data=None, headers=headers, status_code=status)
        if status >= 400:
            self._raise_for_status(response, headers, path)

        try:
            data = response.json()
        except ValueError:
            if response.text.strip():
                raise RemoteError(
                    f"GitHub returned a non-JSON body for {path}", status_code=status, path=path
                ) from None
            data = None
        return ApiResponse(data=data, headers=headers, status_code=status)

    def _track_headers(self, headers: dict[str, str]) -> None:
        rate_limit = RateLimit.from_headers(headers)
        if rate_limit is not None:
            self.rate_limit = rate_limit
            if rate_limit.remaining < self._rate_limit_warning_threshold:
                log.warning(
                    "github_rate_limit_low",
                    remaining=rate_limit.remaining,
                    limit=rate_limit.limit,
                    reset=rate_limit.reset,
                )

        expiration = headers.get(TOKEN_EXPIRATION_HEADER)
        if expiration:
            parsed = _parse_expiration(expiration)
            if parsed is not None:
                self.token_expires_at = parsed

    def _raise_for_status(
        self, response: httpx.Response, headers: dict[str, str], path: str
    ) -> None:
        status = response.status_code
        text = response.text or ""
        message = text
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("message"):
                message = str(body["message"])
        except ValueError:
            pass
        detail = f"GitHub API error ({status}) for {path}: {message or 'no details'}"

        if status == 401:
            raise AuthRequiredError(detail, path=path)
        if status == 429 or (
            status == 403
            and (headers.get("x-ratelimit-remaining") == "0" or "rate limit" in text.lower())
        ):
            reset = headers.get("x-ratelimit-reset")
            raise RateLimitedError(
                detail, reset_at=int(reset) if reset and reset.isdigit() else None, path=path
            )
        if status == 403:
            raise AuthInsufficientError(detail, path=path)
        if status == 404:
            if not self.authenticated:
                detail += " (private repositories need a token with 'repo' scope)"
            raise NotFoundError(detail, path=path)
        if status == 422:
            raise InvalidRequestError(detail, path=path)
        raise RemoteError(detail, status_code=status, path=path)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def verify_token(self) -> bool:
        """Return True if the configured token is accepted by GitHub."""
        if not self.authenticated:
            return False
        try:
            await self._request("GET", "/user")
        except (AuthRequiredError, AuthInsufficientError):
            return False
        return True

    def is_token_expiring(self, within: timedelta = timedelta(days=7)) -> bool:
        """True when GitHub reported a token expiry closer than ``within``."""
        if self.token_expires_at is None:
            return False
        return self.token_expires_at - datetime.now(UTC) < within

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def get_repository(self, owner: str, name: str) -> ApiResponse[RepoMetadata]:
        resp = await self._request("GET", f"/repos/{_seg(owner)}/{_seg(name)}")
        return ApiResponse(RepoMetadata.from_api(resp.data or {}), resp.headers, resp.status_code)

    async def check_connection(self, owner: str, name: str) -> bool:
        """Return True if the repository is reachable with the current credential."""
        try:
            await self.get_repository(owner, name)
        except DeployerError as exc:
            log.info("github_repository_unreachable", repo=f"{owner}/{name}", error=exc.message)
            return False
        return True

    async def get_branches(self, owner: str, name: str) -> ApiResponse[list[GitRef]]:
        resp = await self._request(
            "GET", f"/repos/{_seg(owner)}/{_seg(name)}/branches", params={"per_page": PAGE_SIZE}
        )
        return ApiResponse([GitRef.from_api(b) for b in resp.data or []], resp.headers)

    async def get_tags(self, owner: str, name: str) -> ApiResponse[list[GitRef]]:
        resp = await self._request(
            "GET", f"/repos/{_seg(owner)}/{_seg(name)}/tags", params={"per_page": PAGE_SIZE}
        )
        return ApiResponse([GitRef.from_api(t) for t in resp.data or []], resp.headers)

    async def get_releases(self, owner: str, name: str) -> ApiResponse[list[Release]]:
        resp = await self._request(
            "GET", f"/repos/{_seg(owner)}/{_seg(name)}/releases", params={"per_page": PAGE_SIZE}
        )
        return ApiResponse([Release.from_api(r) for r in resp.data or []], resp.headers)

    async def get_latest_commit(
        self, owner: str, name: str, ref: str = "main"
    ) -> ApiResponse[CommitInfo]:
        """Resolve ``ref`` (branch, tag or SHA) to its commit."""
        resp = await self._request(
            "GET", f"/repos/{_seg(owner)}/{_seg(name)}/commits/{quote(ref, safe='')}"
        )
        commit = CommitInfo.from_api(resp.data or {})
        if not commit.sha:
            raise RemoteError(f"GitHub returned no commit SHA for {owner}/{name}@{ref}")
        return ApiResponse(commit, resp.headers)

    async def compare_commits(
        self, owner: str, name: str, base: str, head: str
    ) -> ApiResponse[Comparison]:
        """Summarise what changed between two refs."""
        basehead = f"{quote(base, safe='')}...{quote(head, safe='')}"
        resp = await self._request("GET", f"/repos/{_seg(owner)}/{_seg(name)}/compare/{basehead}")
        return ApiResponse(Comparison.from_api(resp.data or {}), resp.headers)

    async def get_file_contents(
        self, owner: str, name: str, path: str, ref: str | None = None
    ) -> ApiResponse[bytes]:
        params = {"ref": ref} if ref else None
        resp = await self._request(
            "GET",
            f"/repos/{_seg(owner)}/{_seg(name)}/contents/{quote(path.lstrip('/'), safe='/')}",
            params=params,
        )
        data = resp.data
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise InvalidRequestError(f"{path} in {owner}/{name} is not a file", path=path)
        content = data.get("content") or ""
        if data.get("encoding") == "base64":
            return ApiResponse(base64.b64decode(content), resp.headers)
        return ApiResponse(content.encode("utf-8"), resp.headers)

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def resolve_download_url(self, owner: str, name: str, ref: str) -> str:
        """Return a URL the installer can fetch without sending credentials.

        Without a token this is the public archive URL. With a token the
        zipball endpoint is called with redirects disabled and the
        short-lived ``Location`` it points to is returned instead.
        """
        if not self.authenticated:
            return PUBLIC_ARCHIVE_URL.format(
                owner=_seg(owner), name=_seg(name), ref=quote(ref, safe="/")
            )

        resp = await self._request(
            "GET",
            f"/repos/{_seg(owner)}/{_seg(name)}/zipball/{quote(ref, safe='')}",
            follow_redirects=False,
        )
        location = resp.headers.get("location")
        if not location:
            raise RemoteError(
                "GitHub did not provide a redirect location for the repository archive",
                status_code=resp.status_code,
                owner=owner,
                name=name,
                ref=ref,
            )
        return location

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _list_repositories(
        self, path: str, page: int, extra: dict[str, Any] | None = None
    ) -> ApiResponse[list[RepoMetadata]]:
        params: dict[str, Any] = {"sort": "updated", "page": page, "per_page": PAGE_SIZE}
        params.update(extra or {})
        resp = await self._request("GET", path, params=params)
        data = resp.data
        items = data.get("items", []) if isinstance(data, dict) else data or []
        return ApiResponse([RepoMetadata.from_api(item) for item in items], resp.headers)

    async def list_user_repositories(self, page: int = 1) -> ApiResponse[list[RepoMetadata]]:
        """Repositories visible to the authenticated user."""
        return await self._list_repositories("/user/repos", page)

    async def list_public_repositories(
        self, username: str, page: int = 1
    ) -> ApiResponse[list[RepoMetadata]]:
        return await self._list_repositories(f"/users/{_seg(username)}/repos", page)

    async def list_org_repositories(self, org: str, page: int = 1) -> ApiResponse[list[RepoMetadata]]:
        return await self._list_repositories(f"/orgs/{_seg(org)}/repos", page)

    async def search_repositories(self, query: str, page: int = 1) -> ApiResponse[list[RepoMetadata]]:
        return await self._list_repositories("/search/repositories", page, {"q": query})
