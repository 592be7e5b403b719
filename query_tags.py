#!/usr/bin/env python3
"""query_tags.py

Command-line utility to find the tag(s) of a GitHub repository that match a
commit hash or a name pattern, most recent first.

Usage:
  python query_tags.py 8ae983c                          # tag containing commit 8ae983c...
  python query_tags.py 'swift-6\\.0.*-RELEASE' --all      # every matching tag name
  python query_tags.py --use-release --json 'DEVELOPMENT'   # match release metadata too
  swift --version | python query_tags.py                 # hashes scanned from stdin
  python query_tags.py -R apple/swift-syntax 510.0.0 --jq .sha

Tokens that look like a commit id (7+ lowercase hex digits) are matched as a
prefix of the tag's commit; everything else is a regular expression tested
against the tag name (and, with --use-release, the release fields).

The token is read from --token, GITHUB_TOKEN or GH_TOKEN (a `.env` next to
this script is honoured).
"""
from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import re
import sys
import textwrap
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, IO, Iterable, List, Optional, Tuple

import jq
import requests
from dotenv import load_dotenv

# Use override=True so a blank GITHUB_TOKEN already exported in the shell does
# not shadow the one in `.env`.
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env", override=True)

GRAPHQL_ENDPOINT = "https://api.github.com/graphql"
API_CALL_COUNT = 0

DEFAULT_OWNER = os.getenv("QUERY_TAGS_OWNER", "swiftlang")
DEFAULT_REPO = os.getenv("QUERY_TAGS_REPO", "swift")

REQUEST_TIMEOUT = (5, 30)  # (connect_timeout, read_timeout) in seconds
# One attempt per page unless explicitly raised.
MAX_RETRIES = max(1, int(os.getenv("QUERY_TAGS_MAX_RETRIES", "1")))
RETRY_STATUSES = {502, 503, 504}

# GitHub caps connection pages at 100 nodes.
GRAPHQL_PAGE_SIZE = min(100, max(1, int(os.getenv("GITHUB_GRAPHQL_PAGE_SIZE", "100"))))

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

HASH_RE = re.compile(r"[0-9a-f]{7,}")
STDIN_SEPARATORS = re.compile(r"[\s\-,:()]+")

RELEASE_FIELDS = (
    "createdAt",
    "isDraft",
    "isLatest",
    "isPrerelease",
    "name",
    "publishedAt",
    "description",
)

logger = logging.getLogger(__name__)


class UsageError(Exception):
    """Bad command line; reported before any request is made."""


class GitHubQueryError(Exception):
    """A GraphQL page request failed."""


class FilterError(Exception):
    """The --jq expression failed on a matched record."""


class QueryMode(enum.Enum):
    TAG_REFS = "tag-refs"
    RELEASES = "releases"


@dataclass(frozen=True)
class Release:
    createdAt: Optional[str] = None
    isDraft: bool = False
    isLatest: bool = False
    isPrerelease: bool = False
    name: Optional[str] = None
    publishedAt: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class TagRecord:
    name: Optional[str]
    sha: Optional[str]
    release: Optional[Release] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "sha": self.sha}
        if self.release is not None:
            data["release"] = asdict(self.release)
        return data


@dataclass(frozen=True)
class Options:
    """Everything one invocation needs, fixed before the first request."""

    owner: str = DEFAULT_OWNER
    repo: str = DEFAULT_REPO
    hashes: Tuple[str, ...] = ()
    patterns: Tuple[str, ...] = ()
    all: bool = False
    exclude_prerelease: bool = False
    include_draft: bool = False
    use_release: bool = False
    json: bool = False
    jq: Optional[str] = None
    token: Optional[str] = None
    verbose: bool = False
    log_dir: Optional[str] = None

    @property
    def mode(self) -> QueryMode:
        if self.use_release or self.exclude_prerelease or self.include_draft:
            return QueryMode.RELEASES
        return QueryMode.TAG_REFS


@dataclass
class Page:
    has_next_page: bool
    end_cursor: str
    nodes: List[Dict[str, Any]] = field(default_factory=list)


# --- Token classification --- #

def classify_token(token: str) -> Optional[str]:
    """Return "hash", "pattern" or None (empty token)."""
    if HASH_RE.fullmatch(token):
        return "hash"
    if token:
        return "pattern"
    return None


def scan_hashes(text: str) -> List[str]:
    """Extract hash-like tokens from free text such as `swift --version` output."""
    found: List[str] = []
    for token in STDIN_SEPARATORS.split(text):
        if HASH_RE.fullmatch(token) and token not in found:
            found.append(token)
    return found


def split_repo(spec: str, default_owner: str) -> Tuple[str, str]:
    """Split `[OWNER/]REPO` at the first slash."""
    if "/" in spec:
        owner, name = spec.split("/", 1)
        return owner, name
    return default_owner, spec


# --- Argument parsing --- #

class _ArgumentParser(argparse.ArgumentParser):
    def __init__(self, *args, **kwargs):
        self.option_actions: Dict[str, argparse.Action] = {}
        super().__init__(*args, **kwargs)

    def add_argument(self, *args, **kwargs) -> argparse.Action:
        action = super().add_argument(*args, **kwargs)
        for option in action.option_strings:
            self.option_actions[option] = action
        return action

    def error(self, message: str) -> None:  # argparse would exit(2)
        raise UsageError(message)

    def check_options(self, argv: List[str]) -> None:
        """Raise UsageError for any `-*` token that is not a known option.

        Values consumed by options such as --jq and -R are skipped.
        """
        tokens = iter(argv)
        for token in tokens:
            if not token.startswith("-"):
                continue
            name, has_value = token, False
            if token.startswith("--") and "=" in token:
                name, has_value = token.split("=", 1)[0], True
            action = self.option_actions.get(name)
            if action is None:
                raise UsageError(f"Unknown option {token}")
            if action.dest == "help":
                return
            if action.nargs != 0 and not has_value:
                next(tokens, None)


def _build_parser() -> _ArgumentParser:
    parser = _ArgumentParser(
        prog="query-tags",
        description="Print the most recent tag of a GitHub repository matching a commit hash or pattern.",
        epilog=textwrap.dedent(
            """\
            Tokens of 7+ lowercase hex digits are commit hashes; other tokens are
            regular expressions. When stdin is piped, hashes found in it are added.
            Exit status is 0 when something matched, 1 otherwise.
            """
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument("tokens", nargs="*", metavar="SHA1|PATTERN", help="commit hash prefix or regular expression")
    parser.add_argument("-A", "--all", action="store_true", help="print every match, most recent first")
    parser.add_argument("--exclude-pre-release", dest="exclude_prerelease", action="store_true",
                        help="skip pre-releases (implies --use-release)")
    parser.add_argument("--include-draft", dest="include_draft", action="store_true",
                        help="consider draft releases (implies --use-release)")
    parser.add_argument("--jq", metavar="EXPRESSION", help="jq expression applied to each match (implies --json)")
    parser.add_argument("--json", action="store_true", help="print matches as JSON objects")
    parser.add_argument("-R", "--repo", metavar="[OWNER/]REPO", help=f"repository (default {DEFAULT_OWNER}/{DEFAULT_REPO})")
    parser.add_argument("--use-release", dest="use_release", action="store_true",
                        help="query releases instead of tag refs")
    parser.add_argument("--token", help="GitHub Personal Access Token (or set GITHUB_TOKEN env var)")
    parser.add_argument("--verbose", action="store_true", help="enable verbose debug logging")
    parser.add_argument("--log-dir", dest="log_dir", help="directory to save timestamped logs")
    return parser


def parse_args(argv: List[str], stdin_hashes: Iterable[str] = ()) -> Options:
    """Build :class:`Options` from *argv*, seeded with hashes found on stdin.

    Raises UsageError for unknown options and invalid patterns. ``--help``
    exits via SystemExit(0) as usual for argparse.
    """
    parser = _build_parser()
    parser.check_options(argv)
    args, extras = parser.parse_known_args(argv)

    hashes: List[str] = list(stdin_hashes)
    patterns: List[str] = []
    # parse_known_args leaves positionals that follow an option in *extras*
    for token in list(args.tokens) + extras:
        kind = classify_token(token)
        if kind == "hash":
            if token not in hashes:
                hashes.append(token)
        elif kind == "pattern":
            try:
                re.compile(token)
            except re.error as exc:
                raise UsageError(f"Invalid pattern {token}: {exc}") from exc
            if token not in patterns:
                patterns.append(token)

    owner, repo = DEFAULT_OWNER, DEFAULT_REPO
    if args.repo is not None:
        owner, repo = split_repo(args.repo, owner)

    if args.jq is not None:
        try:
            jq.compile(args.jq)
        except ValueError as exc:
            raise UsageError(f"Invalid jq expression {args.jq}: {exc}") from exc

    return Options(
        owner=owner,
        repo=repo,
        hashes=tuple(hashes),
        patterns=tuple(patterns),
        all=args.all,
        exclude_prerelease=args.exclude_prerelease,
        include_draft=args.include_draft,
        use_release=args.use_release,
        json=args.json or args.jq is not None,
        jq=args.jq,
        token=args.token,
        verbose=args.verbose,
        log_dir=args.log_dir,
    )


# --- GraphQL queries --- #

def build_query(mode: QueryMode, page_size: int = GRAPHQL_PAGE_SIZE) -> str:
    """Return the GraphQL document for *mode*, taking $owner, $name and $endCursor.

    Annotated tags are peeled one level so every node yields a commit oid.
    """
    if mode is QueryMode.RELEASES:
        return textwrap.dedent(
            f"""
            query($owner: String!, $name: String!, $endCursor: String) {{
              repository(owner: $owner, name: $name) {{
                releases(first: {page_size}, after: $endCursor, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
                  pageInfo {{ hasNextPage endCursor }}
                  nodes {{
                    createdAt
                    isDraft
                    isLatest
                    isPrerelease
                    name
                    publishedAt
                    description
                    tag {{
                      name
                      target {{
                        ... on Commit {{ oid }}
                        ... on Tag {{ target {{ ... on Commit {{ oid }} }} }}
                      }}
                    }}
                  }}
                }}
              }}
            }}
            """
        )
    return textwrap.dedent(
        f"""
        query($owner: String!, $name: String!, $endCursor: String) {{
          repository(owner: $owner, name: $name) {{
            refs(refPrefix: \"refs/tags/\", first: {page_size}, after: $endCursor, orderBy: {{field: TAG_COMMIT_DATE, direction: DESC}}) {{
              pageInfo {{ hasNextPage endCursor }}
              nodes {{
                name
                target {{
                  ... on Commit {{ oid }}
                  ... on Tag {{ target {{ ... on Commit {{ oid }} }} }}
                }}
              }}
            }}
          }}
        }}
        """
    )


def _commit_oid(target: Optional[Dict[str, Any]]) -> Optional[str]:
    """Commit id of a ref target, peeling one annotated tag object."""
    if not isinstance(target, dict):
        return None
    if target.get("oid"):
        return target["oid"]
    inner = target.get("target")
    if isinstance(inner, dict):
        return inner.get("oid")
    return None


def normalize_node(node: Dict[str, Any], mode: QueryMode) -> TagRecord:
    """Map a raw `refs` or `releases` node to a :class:`TagRecord`."""
    if mode is QueryMode.TAG_REFS:
        return TagRecord(name=node.get("name"), sha=_commit_oid(node.get("target")))

    tag = node.get("tag") or {}
    release = Release(
        createdAt=node.get("createdAt"),
        isDraft=bool(node.get("isDraft")),
        isLatest=bool(node.get("isLatest")),
        isPrerelease=bool(node.get("isPrerelease")),
        name=node.get("name"),
        publishedAt=node.get("publishedAt"),
        description=node.get("description"),
    )
    return TagRecord(name=tag.get("name"), sha=_commit_oid(tag.get("target")), release=release)


# --- Filtering --- #

def _matches(value: Any, pattern: re.Pattern) -> bool:
    # Absent or non-string fields never match.
    return isinstance(value, str) and pattern.search(value) is not None


class TagFilter:
    """Per-page selection, projection and shaping; built once per run."""

    def __init__(self, options: Options):
        self.mode = options.mode
        self.hashes = options.hashes
        self.patterns = [re.compile(p) for p in options.patterns]
        self.exclude_prerelease = options.exclude_prerelease
        self.include_draft = options.include_draft
        self.json = options.json
        self.all = options.all
        self.program = jq.compile(options.jq) if options.jq is not None else None

    def _searchable(self, record: TagRecord) -> List[Any]:
        values: List[Any] = [record.name]
        if record.release is not None:
            values.extend(getattr(record.release, f) for f in RELEASE_FIELDS)
        return values

    def selects(self, record: TagRecord) -> bool:
        """True if the record matches any hash or any pattern (or none were given)."""
        if not self.hashes and not self.patterns:
            return True
        if record.sha and any(record.sha.startswith(h) for h in self.hashes):
            return True
        return any(_matches(value, p) for value in self._searchable(record) for p in self.patterns)

    def keeps_release(self, record: TagRecord) -> bool:
        if self.mode is not QueryMode.RELEASES or record.release is None:
            return True
        if self.exclude_prerelease and record.release.isPrerelease:
            return False
        if not self.include_draft and record.release.isDraft:
            return False
        return True

    def apply(self, nodes: Iterable[Dict[str, Any]]) -> List[Any]:
        """Return the output items for one page, in page order.

        Raises FilterError if the jq expression fails on a record.
        """
        records = [normalize_node(n, self.mode) for n in nodes]
        survivors = [r for r in records if self.selects(r) and self.keeps_release(r)]

        items: List[Any] = [r.to_dict() if self.json else r.name for r in survivors]
        if self.program is not None:
            mapped: List[Any] = []
            for item in items:
                try:
                    mapped.extend(self.program.input_value(item).all())
                except ValueError as exc:
                    raise FilterError(str(exc)) from exc
            items = mapped

        if self.all:
            return items
        return items[:1]


# --- GitHub GraphQL transport --- #

def _github_graphql(query: str, variables: dict, headers: dict, *, timeout: tuple = REQUEST_TIMEOUT, max_retries: int = MAX_RETRIES) -> dict:
    """Execute a GraphQL query, retrying transient failures when *max_retries* > 1."""
    global API_CALL_COUNT
    for attempt in range(1, max_retries + 1):
        API_CALL_COUNT += 1
        start = time.perf_counter()
        try:
            resp = requests.post(
                GRAPHQL_ENDPOINT,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=timeout,
            )
            resp.raise_for_status()
            logger.debug("GraphQL request completed in %.3fs", time.perf_counter() - start)
            try:
                payload = resp.json()
            except ValueError as exc:
                raise GitHubQueryError(f"Invalid GraphQL response: {exc}") from exc
            if payload.get("errors"):
                raise GitHubQueryError(f"GitHub GraphQL errors: {payload['errors']}")
            return payload.get("data") or {}
        except requests.HTTPError as exc:
            status = exc.response.status_code
            if status not in RETRY_STATUSES or attempt == max_retries:
                logger.debug("GraphQL request failed after %.3fs", time.perf_counter() - start)
                raise GitHubQueryError(f"GitHub GraphQL error {status}: {exc.response.text}") from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            if attempt == max_retries:
                raise GitHubQueryError(f"GitHub connection error: {exc}") from exc
        sleep_s = 2 ** attempt
        logger.info("Retrying GraphQL request in %ds (attempt %d/%d)...", sleep_s, attempt, max_retries)
        time.sleep(sleep_s)
    raise GitHubQueryError("GitHub GraphQL request was not attempted")


def _headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Accept": "application/vnd.github+json"}
    if token:
        headers["Authorization"] = f"bearer {token}"
    else:
        logger.warning("No GitHub token configured; the GraphQL API requires one")
    return headers


def fetch_page(query: str, owner: str, name: str, cursor: str, headers: Dict[str, str], mode: QueryMode) -> Page:
    """Fetch one page of tag refs or releases starting after *cursor*."""
    variables = {"owner": owner, "name": name, "endCursor": cursor or None}
    data = _github_graphql(query, variables, headers)
    repository = data.get("repository")
    if repository is None:
        raise GitHubQueryError(f"Repository {owner}/{name} not found")
    key = "releases" if mode is QueryMode.RELEASES else "refs"
    conn = repository.get(key) or {}
    page_info = conn.get("pageInfo") or {}
    return Page(
        has_next_page=bool(page_info.get("hasNextPage")),
        end_cursor=page_info.get("endCursor") or "",
        nodes=conn.get("nodes") or [],
    )


FetchFunc = Callable[[str, str, str, str, Dict[str, str], QueryMode], Page]


def find_tags(
    options: Options,
    headers: Dict[str, str],
    emit: Callable[[List[Any]], None],
    fetch: FetchFunc = fetch_page,
) -> bool:
    """Page through the repository until a match is found (or every page with --all).

    Each non-empty page result is passed to *emit*. Returns whether anything
    matched. An upstream failure ends paging without raising.
    """
    mode = options.mode
    query = build_query(mode)
    tag_filter = TagFilter(options)
    cursor = ""
    found = False
    pages = 0

    while True:
        try:
            page = fetch(query, options.owner, options.repo, cursor, headers, mode)
            items = tag_filter.apply(page.nodes)
        except GitHubQueryError as exc:
            logger.warning("%s", exc)
            break
        except FilterError as exc:
            logger.warning("jq expression failed: %s", exc)
            break
        pages += 1
        logger.debug("Page %d after cursor %r: %d nodes, %d matches", pages, cursor, len(page.nodes), len(items))

        if items:
            emit(items)
            found = True
            if not options.all:
                break
        if not page.has_next_page:
            break
        cursor = page.end_cursor

    logger.info("Fetched %d page(s) from %s/%s", pages, options.owner, options.repo)
    return found


def emit_results(items: Iterable[Any], stream: IO[str]) -> None:
    """Write strings raw and anything else as compact JSON, one per line."""
    for item in items:
        if isinstance(item, str):
            stream.write(item + "\n")
        else:
            stream.write(json.dumps(item, ensure_ascii=False) + "\n")
    stream.flush()


_LOG_HANDLERS: List[logging.Handler] = []


def _configure_logging(verbose: bool, log_dir: Optional[str]) -> None:
    root_logger = logging.getLogger()
    # cli() may run several times in one process (tests)
    while _LOG_HANDLERS:
        handler = _LOG_HANDLERS.pop()
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    _LOG_HANDLERS.append(console_handler)

    if log_dir:
        debug_log_dir = Path(log_dir)
        debug_log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        file_handler = logging.FileHandler(debug_log_dir / f"query-tags_{timestamp}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _LOG_HANDLERS.append(file_handler)


def cli(argv: Optional[List[str]] = None, stdin: Optional[IO[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if stdin is None:
        stdin = sys.stdin

    piped = not stdin.isatty()
    stdin_hashes = scan_hashes(stdin.read()) if piped else []

    try:
        options = parse_args(argv, stdin_hashes)
    except UsageError as exc:
        print(exc, file=sys.stderr)
        return EXIT_FAILURE

    if piped and not options.hashes and not options.patterns:
        print("No hashes or patterns are provided", file=sys.stderr)
        return EXIT_FAILURE

    _configure_logging(options.verbose, options.log_dir)
    start_time = time.perf_counter()
    logger.debug(
        "Querying %s of %s/%s (hashes=%s patterns=%s)",
        options.mode.value, options.owner, options.repo, list(options.hashes), list(options.patterns),
    )

    token = options.token or os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN")
    found = find_tags(options, _headers(token), lambda items: emit_results(items, sys.stdout))

    logger.info("Total GitHub API calls: %d", API_CALL_COUNT)
    logger.info("Total runtime: %.2f seconds", time.perf_counter() - start_time)
    return EXIT_SUCCESS if found else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(cli())
