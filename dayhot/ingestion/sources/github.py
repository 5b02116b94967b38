"""
GitHub repository search integration.

Searches public repositories through the REST API and optionally enriches a
single repository with its README, recent commits and latest release.

API Documentation: https://docs.github.com/en/rest/search/search
"""

import asyncio
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from dayhot.config import FetchSettings
from dayhot.ingestion.errors import IngestionError
from dayhot.ingestion.fetch import FetchContract
from dayhot.ingestion.http import build_client
from dayhot.ingestion.sources.base import CrawlResult, HTTPAdapter, Pagination
from dayhot.models.article import NormalizedArticle, SourceType

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_CATEGORY = "GitHub Project"

DEFAULT_QUERY = "machine learning"

# Queries used for the trending sweep
TRENDING_QUERIES = [
    "artificial intelligence",
    "machine learning",
    "deep learning",
    "neural network",
    "transformer",
    "large language model",
    "computer vision",
    "natural language processing",
    "reinforcement learning",
]

AUTHENTICATED_REQUESTS_PER_MINUTE = 60
ANONYMOUS_REQUESTS_PER_MINUTE = 10

# GitHub answers secondary rate limits with 429; those are worth retrying
RETRYABLE_STATUSES = {429}


def parse_github_date(value: Optional[str]) -> Optional[datetime]:
    """Parse GitHub ISO 8601 timestamps (``2024-01-15T12:00:00Z``)."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class GitHubAdapter(HTTPAdapter):
    """
    GitHub repository search adapter.

    Rate limit is 60 requests/minute with a token and 10 without; HTTP 429
    responses are retried by the fetch contract.
    """

    name = "github"
    source_type = SourceType.CODE_REPO

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        token: Optional[str] = None,
        default_query: str = DEFAULT_QUERY,
        base_url: str = GITHUB_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or FetchSettings()
        self.token = token
        self.default_query = default_query

        headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            headers["Authorization"] = f"token {token}"

        self.client = build_client(
            settings, base_url=base_url, headers=headers, transport=transport
        )
        self.fetcher = FetchContract.from_settings(
            self.name,
            settings,
            requests_per_minute=(
                AUTHENTICATED_REQUESTS_PER_MINUTE if token else ANONYMOUS_REQUESTS_PER_MINUTE
            ),
            retryable_statuses=RETRYABLE_STATUSES,
            clock=clock,
            sleep=sleep,
        )

    # =========================================================================
    # Search
    # =========================================================================

    async def fetch(self, query: str, pagination: Pagination) -> CrawlResult:
        """Search repositories, most recently updated first."""
        return await self.search_repositories(query, pagination)

    async def search_repositories(
        self,
        query: str,
        pagination: Pagination = Pagination(),
        sort: str = "updated",
        order: str = "desc",
    ) -> CrawlResult:
        params = {
            "q": query,
            "sort": sort,
            "order": order,
            "per_page": pagination.per_page,
            "page": pagination.page,
        }
        logger.info(f"Searching GitHub repositories: {query}")

        try:
            data = await self._get_json("/search/repositories", params)
        except IngestionError as e:
            logger.error(f"GitHub search {query!r} failed: {e}")
            return CrawlResult.failure(str(e), query=query)

        items = self._parse_repositories(data.get("items") or [])
        total = data.get("total_count")

        return CrawlResult(
            success=True,
            items=items,
            total_available=total,
            has_more=total is not None and pagination.page * pagination.per_page < total,
            query=query,
        )

    async def fetch_latest(
        self,
        max_results: int,
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        """
        Fetch recently updated repositories for the default query.

        When ``since`` is given the search is narrowed server-side with a
        ``pushed:FROM..TO`` qualifier.
        """
        query = self.default_query
        if since is not None:
            now = datetime.now(timezone.utc)
            query = f"{query} pushed:{since.date().isoformat()}..{now.date().isoformat()}"
        return await self.search_repositories(query, Pagination(1, max_results))

    async def trending_repositories(
        self,
        per_query: int = 10,
        pushed_after: Optional[datetime] = None,
    ) -> dict[str, CrawlResult]:
        """Active, well-starred repositories for each trending AI query."""
        pushed_after = pushed_after or datetime.now(timezone.utc) - timedelta(days=365)
        results = {}
        for query in TRENDING_QUERIES:
            search = f"{query} stars:>100 pushed:>{pushed_after.date().isoformat()}"
            results[query] = await self.search_repositories(search, Pagination(1, per_query))
        return results

    async def organization_repositories(self, org: str, per_page: int = 30) -> CrawlResult:
        """Repositories of an organization, most recently updated first."""
        return await self._list_repositories(f"/orgs/{org}/repos", per_page, query=f"org:{org}")

    async def user_repositories(self, username: str, per_page: int = 30) -> CrawlResult:
        """Repositories of a user, most recently updated first."""
        return await self._list_repositories(
            f"/users/{username}/repos", per_page, query=f"user:{username}"
        )

    async def _list_repositories(self, path: str, per_page: int, query: str) -> CrawlResult:
        params = {"sort": "updated", "direction": "desc", "per_page": per_page}
        try:
            data = await self._get_json(path, params)
        except IngestionError as e:
            logger.error(f"GitHub listing {path} failed: {e}")
            return CrawlResult.failure(str(e), query=query)

        items = self._parse_repositories(data if isinstance(data, list) else [])
        return CrawlResult(success=True, items=items, total_available=len(items), query=query)

    # =========================================================================
    # Repository details
    # =========================================================================

    async def repository_details(self, owner: str, repo: str) -> NormalizedArticle:
        """
        Fetch one repository plus README, latest commits and latest release.

        The four calls run concurrently. Enrichment failures are logged and
        the corresponding field omitted; a failed repository call raises.

        Raises:
            IngestionError: if the repository itself cannot be fetched or mapped
        """
        path = f"/repos/{owner}/{repo}"
        repo_data, readme, commits, release = await asyncio.gather(
            self._get_json(path),
            self._readme(owner, repo),
            self._commits(owner, repo, count=5),
            self._latest_release(owner, repo),
            return_exceptions=True,
        )

        if isinstance(repo_data, BaseException):
            raise repo_data

        try:
            article = self._parse_repository(repo_data)
        except ValueError as e:
            raise IngestionError(f"Repository {owner}/{repo} could not be mapped: {e}") from e
        if article is None:
            raise IngestionError(f"Repository {owner}/{repo} is missing required fields")

        extras: dict[str, Any] = {}
        for key, value in (
            ("readme", readme),
            ("latest_commits", commits),
            ("latest_release", release),
        ):
            if isinstance(value, BaseException):
                logger.warning(f"Could not fetch {key} for {owner}/{repo}: {value}")
                continue
            extras[key] = value

        return article.model_copy(update={"metadata": {**article.metadata, **extras}})

    async def _readme(self, owner: str, repo: str) -> str:
        data = await self._get_json(f"/repos/{owner}/{repo}/readme")
        return base64.b64decode(data.get("content") or "").decode("utf-8", errors="replace")

    async def _commits(self, owner: str, repo: str, count: int = 5) -> list[dict[str, Any]]:
        data = await self._get_json(f"/repos/{owner}/{repo}/commits", {"per_page": count})
        commits = []
        for item in data:
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            commits.append({
                "sha": item.get("sha"),
                "message": commit.get("message"),
                "author": author.get("name"),
                "date": author.get("date"),
                "url": item.get("html_url"),
            })
        return commits

    async def _latest_release(self, owner: str, repo: str) -> dict[str, Any]:
        data = await self._get_json(f"/repos/{owner}/{repo}/releases/latest")
        return {
            "tag_name": data.get("tag_name"),
            "name": data.get("name"),
            "body": data.get("body"),
            "published_at": data.get("published_at"),
            "url": data.get("html_url"),
        }

    # =========================================================================
    # Status
    # =========================================================================

    async def check_rate_limit(self) -> dict[str, Any]:
        """Current API quota as reported by ``/rate_limit``."""
        return await self._get_json("/rate_limit")

    async def health_check(self) -> bool:
        try:
            await self.check_rate_limit()
        except IngestionError as e:
            logger.warning(f"GitHub health check failed: {e}")
            return False
        return True

    # =========================================================================
    # Mapping
    # =========================================================================

    def _parse_repositories(self, repos: list[dict[str, Any]]) -> list[NormalizedArticle]:
        articles = []
        for repo in repos:
            try:
                article = self._parse_repository(repo)
            except ValueError as e:
                logger.warning(f"Failed to parse GitHub repository: {e}")
                continue
            if article:
                articles.append(article)
        return articles

    def _parse_repository(self, repo: dict[str, Any]) -> Optional[NormalizedArticle]:
        """Map a repository payload; repositories without an update time are skipped."""
        full_name = repo.get("full_name") or repo.get("name")
        updated_at = parse_github_date(repo.get("updated_at"))
        if not full_name or updated_at is None:
            return None

        owner = repo.get("owner") or {}
        license_info = repo.get("license") or {}
        description = repo.get("description") or ""

        return NormalizedArticle.create(
            title=full_name,
            summary_text=description,
            source_url=repo.get("html_url") or "",
            author=owner.get("login") or "",
            published_at=updated_at,
            category=GITHUB_CATEGORY,
            tags=repo.get("topics") or [],
            source_type=self.source_type,
            metadata={
                "repo_id": repo.get("id"),
                "name": repo.get("name"),
                "language": repo.get("language"),
                "stars": repo.get("stargazers_count", 0),
                "forks": repo.get("forks_count", 0),
                "watchers": repo.get("watchers_count", 0),
                "open_issues": repo.get("open_issues_count", 0),
                "license": license_info.get("name"),
                "homepage": repo.get("homepage"),
                "created_at": repo.get("created_at"),
                "pushed_at": repo.get("pushed_at"),
                "is_fork": repo.get("fork", False),
                "is_archived": repo.get("archived", False),
                "default_branch": repo.get("default_branch"),
                "owner": {
                    "login": owner.get("login"),
                    "id": owner.get("id"),
                    "type": owner.get("type"),
                    "avatar_url": owner.get("avatar_url"),
                },
            },
        )
