"""GitHub API client for fetching pull requests and their activity."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator

import requests
from github import Github, GithubException

from prbar.cache import PRKey
from prbar.config import Config

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
SINGLE_SHOT_SIZE = 100
LIGHT_PAGE_SIZE = 25
RETRY_DELAY = 0.3

_PR_FIELDS = """
  number title url createdAt updatedAt isDraft isInMergeQueue
  repository{nameWithOwner}
  author{login avatarUrl(size:28)}
  comments{totalCount}
  reviewDecision
  reactionGroups{viewerHasReacted}
  reviewThreads(first:100){nodes{comments{totalCount}}}
  reviewRequests(first:100){nodes{requestedReviewer{... on User{login} ... on Team{slug}}}}
"""

_LIGHT_PR_FIELDS = """
  number title url createdAt updatedAt
  repository{nameWithOwner}
  author{login avatarUrl(size:28)}
"""

SEARCH_QUERY = """
query($q:String!,$n:Int!,$a:String){
  search(query:$q,type:ISSUE,first:$n,after:$a){
    pageInfo{hasNextPage endCursor}
    edges{node{... on PullRequest{%s}}}
  }
}""" % _PR_FIELDS

LIGHT_SEARCH_QUERY = """
query($q:String!,$n:Int!,$a:String){
  search(query:$q,type:ISSUE,first:$n,after:$a){
    pageInfo{hasNextPage endCursor}
    edges{node{... on PullRequest{%s}}}
  }
}""" % _LIGHT_PR_FIELDS

PULL_DATA_QUERY = """
query($owner:String!,$name:String!,$number:Int!){
  repository(owner:$owner,name:$name){
    pullRequest(number:$number){
      comments(last:1){totalCount nodes{id author{login} body}}
      reviewThreads(first:100){nodes{comments{totalCount}}}
      reviews(last:100){nodes{author{login} state body submittedAt}}
    }
  }
}"""

REVIEW_REQUESTS_QUERY = """
query($owner:String!,$name:String!,$number:Int!){
  repository(owner:$owner,name:$name){
    pullRequest(number:$number){
      timelineItems(last:50,itemTypes:[REVIEW_REQUESTED_EVENT]){
        nodes{
          ... on ReviewRequestedEvent{
            createdAt
            requestedReviewer{
              __typename
              ... on Team{slug organization{login}}
              ... on User{login}
            }
          }
        }
      }
    }
  }
}"""


class SearchError(Exception):
    """Raised when a search page can't be fetched, even after a retry."""


@dataclass
class PullRequest:
    """A pull request as returned by a search or listing."""

    repo: str
    number: int
    title: str
    url: str
    updated_at: str
    author: str = "unknown"
    avatar_url: str = ""
    created_at: str = ""
    is_draft: bool = False
    is_in_merge_queue: bool = False
    comment_count: int = 0
    review_decision: str = ""
    viewer_has_reacted: bool = False
    requested_reviewers: tuple[str, ...] = ()

    @property
    def key(self) -> PRKey:
        return self.repo, self.number


@dataclass
class SearchPage:
    """One page of search results plus its continuation cursor."""

    entries: list[PullRequest]
    has_next: bool
    end_cursor: str | None


@dataclass
class SearchResult:
    """Entries collected for a query and whether every page was fetched."""

    entries: list[PullRequest] = field(default_factory=list)
    complete: bool = True


@dataclass
class Review:
    """A submitted pull request review."""

    author: str
    state: str
    submitted_at: str
    body: str = ""


@dataclass(frozen=True)
class Comment:
    """The latest conversation comment on a pull request."""

    id: str
    author: str
    body: str


@dataclass
class PullData:
    """Raw activity of a pull request, fetched in one query."""

    issue_comment_count: int
    thread_comment_count: int
    reviews: list[Review]
    latest_comment: Comment | None


@dataclass
class PullDetail:
    """Point lookup of a single pull request."""

    repo: str
    number: int
    title: str
    url: str
    state: str
    merged: bool
    merged_at: str | None
    created_at: str | None


def to_iso(value: datetime | None) -> str | None:
    """Format a datetime as ISO-8601 UTC with second precision (``...Z``)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def pull_request_from_node(node: dict | None) -> PullRequest | None:
    """Normalize a GraphQL search node.

    Returns:
        A PullRequest, or None for nodes that aren't pull requests (issues
        come back as empty objects).
    """
    if not node or "number" not in node:
        return None

    repo = (node.get("repository") or {}).get("nameWithOwner")
    if not repo:
        return None

    author = node.get("author") or {}
    threads = (node.get("reviewThreads") or {}).get("nodes") or []
    thread_comments = sum(((t or {}).get("comments") or {}).get("totalCount") or 0 for t in threads)
    reactions = node.get("reactionGroups") or []

    reviewers = []
    for request in (node.get("reviewRequests") or {}).get("nodes") or []:
        reviewer = (request or {}).get("requestedReviewer") or {}
        name = reviewer.get("login") or reviewer.get("slug")
        if name:
            reviewers.append(name)

    number = int(node["number"])
    return PullRequest(
        repo=repo,
        number=number,
        title=node.get("title") or "",
        url=node.get("url") or f"https://github.com/{repo}/pull/{number}",
        updated_at=node.get("updatedAt") or "",
        author=author.get("login") or "unknown",
        avatar_url=author.get("avatarUrl") or "",
        created_at=node.get("createdAt") or "",
        is_draft=bool(node.get("isDraft")),
        is_in_merge_queue=bool(node.get("isInMergeQueue")),
        comment_count=((node.get("comments") or {}).get("totalCount") or 0) + thread_comments,
        review_decision=node.get("reviewDecision") or "",
        viewer_has_reacted=any((group or {}).get("viewerHasReacted") for group in reactions),
        requested_reviewers=tuple(reviewers),
    )


def parse_search_page(search: dict) -> SearchPage:
    """Turn a GraphQL ``search`` payload into a SearchPage."""
    entries = []
    for edge in search.get("edges") or []:
        pr = pull_request_from_node((edge or {}).get("node"))
        if pr is not None:
            entries.append(pr)

    page_info = search.get("pageInfo") or {}
    cursor = page_info.get("endCursor")
    return SearchPage(
        entries=entries,
        has_next=bool(page_info.get("hasNextPage")) and bool(cursor),
        end_cursor=cursor,
    )


def parse_pull_data(pr: dict) -> PullData:
    """Turn the consolidated activity query payload into PullData."""
    comments = pr.get("comments") or {}
    latest = None
    nodes = comments.get("nodes") or []
    if nodes and nodes[-1]:
        node = nodes[-1]
        latest = Comment(
            id=str(node.get("id") or ""),
            author=(node.get("author") or {}).get("login") or "",
            body=node.get("body") or "",
        )
        if not latest.id:
            latest = None

    threads = (pr.get("reviewThreads") or {}).get("nodes") or []
    reviews = [
        Review(
            author=(review.get("author") or {}).get("login") or "",
            state=review.get("state") or "",
            submitted_at=review.get("submittedAt") or "",
            body=review.get("body") or "",
        )
        for review in (pr.get("reviews") or {}).get("nodes") or []
        if review
    ]

    return PullData(
        issue_comment_count=comments.get("totalCount") or 0,
        thread_comment_count=sum(
            ((t or {}).get("comments") or {}).get("totalCount") or 0 for t in threads
        ),
        reviews=reviews,
        latest_comment=latest,
    )


class GitHubClient:
    """Client for the GitHub queries behind every menu section."""

    def __init__(self, github: Github, config: Config) -> None:
        """Initialize the client.

        Args:
            github: Authenticated PyGithub instance.
            config: Application configuration.
        """
        self._github = github
        self._config = config
        self._username: str | None = None

    @property
    def username(self) -> str:
        """Get the authenticated user's login (cached, empty if unknown)."""
        if self._username is None:
            try:
                self._username = self._github.get_user().login
            except (GithubException, requests.RequestException) as e:
                logger.warning("Cannot resolve viewer login: %s", e)
                return ""
        return self._username

    def _graphql(self, query: str, variables: dict) -> dict | None:
        """Run a GraphQL query and return its ``data`` object, or None on failure."""
        try:
            _, response = self._github.requester.graphql_query(query, variables)
        except (GithubException, requests.RequestException) as e:
            logger.warning("GraphQL request failed: %s", e)
            return None

        if not isinstance(response, dict) or not isinstance(response.get("data"), dict):
            logger.warning("GraphQL response without data")
            return None
        return response["data"]

    def _search_page_once(
        self, query: str, first: int, after: str | None, light: bool = False
    ) -> SearchPage | None:
        variables = {"q": query, "n": first, "a": after}
        data = self._graphql(LIGHT_SEARCH_QUERY if light else SEARCH_QUERY, variables)
        if data is None:
            return None
        search = data.get("search")
        if not isinstance(search, dict):
            return None
        return parse_search_page(search)

    def search_page(
        self, query: str, first: int = PAGE_SIZE, after: str | None = None, light: bool = False
    ) -> SearchPage | None:
        """Fetch one search page, retrying once after a short delay.

        A heavy selection can exceed GraphQL complexity limits and come back
        with a null payload, so the last attempt uses a lighter selection.

        Returns:
            The page, or None if every attempt failed.
        """
        page = self._search_page_once(query, first, after, light)
        if page is not None:
            return page

        time.sleep(RETRY_DELAY)
        page = self._search_page_once(query, first, after, light)
        if page is not None or light:
            return page

        logger.warning("Search failed twice, trying light selection: %s", query)
        return self._search_page_once(query, min(first, LIGHT_PAGE_SIZE), after, light=True)

    def iter_pages(
        self,
        query: str,
        paginate: bool = True,
        first: int = PAGE_SIZE,
        after: str | None = None,
        light: bool = False,
    ) -> Iterator[SearchPage]:
        """Lazily yield search pages, following the continuation cursor.

        Args:
            query: GitHub search query.
            paginate: Follow ``end_cursor`` until exhausted; otherwise stop
                after the first page.
            first: Page size.
            after: Cursor to resume from.
            light: Use the lighter field selection.

        Raises:
            SearchError: When a page fails even after its retry. Pages already
                yielded stay valid.
        """
        while True:
            page = self.search_page(query, first=first, after=after, light=light)
            if page is None:
                raise SearchError(f"search failed: {query}")
            yield page
            if not paginate or not page.has_next:
                return
            after = page.end_cursor

    def search(
        self, query: str, paginate: bool = True, first: int = PAGE_SIZE, light: bool = False
    ) -> SearchResult:
        """Collect search entries, keeping the partial result on failure."""
        result = SearchResult()
        try:
            for page in self.iter_pages(query, paginate=paginate, first=first, light=light):
                result.entries.extend(page.entries)
        except SearchError as e:
            logger.warning("%s (kept %d entries)", e, len(result.entries))
            result.complete = False
        return result

    def search_once(self, query: str, first: int = SINGLE_SHOT_SIZE) -> SearchResult:
        """Single-page search. An empty page is retried once, since the search
        index sometimes answers with a transiently empty result."""
        result = self.search(query, paginate=False, first=first)
        if not result.entries:
            logger.info("Empty search, retrying: %s", query)
            time.sleep(RETRY_DELAY)
            retry = self.search(query, paginate=False, first=first)
            if retry.entries or retry.complete:
                return retry
        return result

    def list_open_pulls(self, repos: list[str]) -> SearchResult:
        """List open pull requests repository by repository over REST.

        Slower than search but independent of it; used when the search path
        produced nothing.
        """
        result = SearchResult()
        for repo_name in repos:
            try:
                repo = self._github.get_repo(repo_name)
                for pull in repo.get_pulls(state="open"):
                    result.entries.append(
                        PullRequest(
                            repo=pull.base.repo.full_name if pull.base and pull.base.repo else repo_name,
                            number=pull.number,
                            title=pull.title or "",
                            url=pull.html_url or f"https://github.com/{repo_name}/pull/{pull.number}",
                            updated_at=to_iso(pull.updated_at) or "1970-01-01T00:00:00Z",
                            author=pull.user.login if pull.user else "unknown",
                            avatar_url=pull.user.avatar_url if pull.user else "",
                            created_at=to_iso(pull.created_at) or "",
                            is_draft=bool(pull.draft),
                        )
                    )
            except (GithubException, requests.RequestException) as e:
                logger.warning("Cannot list open pulls for %s: %s", repo_name, e)
                result.complete = False
        return result

    def get_pull_detail(self, repo: str, number: int) -> PullDetail | None:
        """Look up a single pull request; None if the lookup fails."""
        try:
            pull = self._github.get_repo(repo).get_pull(number)
            return PullDetail(
                repo=repo,
                number=number,
                title=pull.title or "",
                url=pull.html_url or f"https://github.com/{repo}/pull/{number}",
                state=pull.state or "",
                merged=bool(pull.merged),
                merged_at=to_iso(pull.merged_at),
                created_at=to_iso(pull.created_at),
            )
        except (GithubException, requests.RequestException) as e:
            logger.warning("Cannot look up %s#%s: %s", repo, number, e)
            return None

    def fetch_pull_data(self, repo: str, number: int) -> PullData | None:
        """Fetch comments, review threads and reviews of a PR in one query."""
        owner, _, name = repo.partition("/")
        data = self._graphql(PULL_DATA_QUERY, {"owner": owner, "name": name, "number": number})
        if data is None:
            return None
        pr = (data.get("repository") or {}).get("pullRequest")
        if not isinstance(pr, dict):
            return None
        return parse_pull_data(pr)

    def latest_review_request_at(
        self, repo: str, number: int, teams: list[str], user: str | None = None
    ) -> str | None:
        """Return the newest review-request timestamp for one of ``teams`` or ``user``.

        Args:
            repo: Repository as owner/name.
            number: Pull request number.
            teams: Team ids as org/slug.
            user: Login of an individually requested reviewer, if relevant.

        Returns:
            ISO timestamp, or None if there is no matching request or the
            query failed.
        """
        owner, _, name = repo.partition("/")
        data = self._graphql(
            REVIEW_REQUESTS_QUERY, {"owner": owner, "name": name, "number": number}
        )
        if data is None:
            return None

        pr = (data.get("repository") or {}).get("pullRequest") or {}
        wanted_teams = {team.lower() for team in teams}
        stamps = []
        for node in (pr.get("timelineItems") or {}).get("nodes") or []:
            reviewer = (node or {}).get("requestedReviewer") or {}
            created_at = (node or {}).get("createdAt")
            if not created_at:
                continue
            if reviewer.get("__typename") == "Team":
                org = (reviewer.get("organization") or {}).get("login") or ""
                if f"{org}/{reviewer.get('slug') or ''}".lower() in wanted_teams:
                    stamps.append(created_at)
            elif reviewer.get("__typename") == "User" and user:
                if (reviewer.get("login") or "").lower() == user.lower():
                    stamps.append(created_at)
        return max(stamps) if stamps else None

    def team_members(self, team: str) -> list[str] | None:
        """Return member logins of ``org/slug``, or None if they can't be listed."""
        org, _, slug = team.partition("/")
        try:
            members = self._github.get_organization(org).get_team_by_slug(slug).get_members()
            return [member.login for member in members]
        except (GithubException, requests.RequestException) as e:
            logger.warning("Cannot list members of %s: %s", team, e)
            return None

    def unread_pull_requests(self, limit: int = 100) -> set[PRKey]:
        """Return PRs with unread notifications (empty when unavailable)."""
        unread = set()
        try:
            for count, notification in enumerate(self._github.get_user().get_notifications()):
                if count >= limit:
                    break
                subject = notification.subject
                if not notification.unread or subject.type != "PullRequest" or not subject.url:
                    continue
                number = subject.url.rstrip("/").rsplit("/", 1)[-1]
                if number.isdigit():
                    unread.add((notification.repository.full_name, int(number)))
        except (GithubException, requests.RequestException) as e:
            logger.warning("Cannot read notifications: %s", e)
        return unread

    def involved_pull_requests(self) -> set[PRKey]:
        """Return open PRs that involve the viewer (first 100 only, for speed)."""
        result = self.search(
            "is:pr is:open involves:@me", paginate=False, first=SINGLE_SHOT_SIZE, light=True
        )
        return {pr.key for pr in result.entries}
