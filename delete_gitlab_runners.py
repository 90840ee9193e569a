#!/usr/bin/env python3
"""
gl-runner-cleanup — Remove GitLab CI runners by description pattern.

Lists every runner registered on a GitLab instance, keeps the ones whose
description matches a regular expression, and either reports them (the
default) or deletes them when -force is given.
"""

import argparse
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests

VERSION = "1.0.0"
RUNNERS_PATH = "api/v4/runners/"
TOKEN_ENV = "TOKEN"
TOKEN_HEADER = "Private-Token"
REDACTED = "***"
MAX_RUNNER_ID = 2**64 - 1

logger = logging.getLogger("gl_runner_cleanup")


# ── Terminal Styling ──────────────────────────────────────────────────────


class Style:
    """ANSI styling with automatic detection. Respects NO_COLOR convention."""

    _enabled: bool = (
        hasattr(sys.stderr, "isatty")
        and sys.stderr.isatty()
        and os.environ.get("NO_COLOR") is None
    )

    RED = "\033[31m" if _enabled else ""
    YELLOW = "\033[33m" if _enabled else ""
    RESET = "\033[0m" if _enabled else ""

    @classmethod
    def error(cls, text: str) -> str:
        return f"{cls.RED}{text}{cls.RESET}"

    @classmethod
    def warn(cls, text: str) -> str:
        return f"{cls.YELLOW}{text}{cls.RESET}"


# ── Logging ───────────────────────────────────────────────────────────────


class FieldsFormatter(logging.Formatter):
    """Append the record's structured ``fields`` as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return message
        pairs = " ".join(f"{key}={value!r}" for key, value in fields.items())
        return f"{message} {pairs}"


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        FieldsFormatter("%(asctime)s %(levelname)s %(message)s")
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
    )


# ── Exceptions ────────────────────────────────────────────────────────────


class RunnerCleanupError(Exception):
    """Base class for every error that aborts a cleanup run."""


class ConfigError(RunnerCleanupError):
    """Raised for missing or malformed command-line input or credentials."""


class TransportError(RunnerCleanupError):
    """Raised when a request fails or returns a non-success status."""


class DecodeError(RunnerCleanupError):
    """Raised when a response body is not the expected JSON shape."""


# ── Data Model ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Runner:
    """A registered runner as returned by the runners API."""

    id: int
    description: str


@dataclass(frozen=True)
class Settings:
    """Validated run configuration, built once and passed explicitly."""

    root_url: str
    pattern: "re.Pattern[str]"
    token: str
    force: bool = False
    # Stops collection after this many pages; None keeps paging until empty.
    max_pages: Optional[int] = None

    @property
    def runners_url(self) -> str:
        return urljoin(self.root_url, RUNNERS_PATH)


# ── Input Validation ──────────────────────────────────────────────────────


def normalize_root_url(base_url: str) -> str:
    """Parse an absolute http(s) URL and give its path one trailing slash."""
    try:
        parts = urlsplit(base_url.strip())
        parts.port  # raises ValueError for a bad port
    except ValueError as exc:
        raise ConfigError(f"bad base URL: {exc}") from exc

    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(
            f"bad base URL: '{base_url}' is not an absolute http(s) URL"
        )

    path = parts.path.rstrip("/") + "/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def validate_inputs(
    base_url: Optional[str],
    pattern: Optional[str],
    force: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Turn raw CLI values and the environment into Settings.

    Raises ConfigError for the first problem found, checked in the order
    base URL, pattern, token, URL syntax, pattern syntax.
    """
    if environ is None:
        environ = os.environ

    if not base_url:
        raise ConfigError("base URL missing")
    if not pattern:
        raise ConfigError("pattern missing")

    token = environ.get(TOKEN_ENV, "")
    if not token:
        raise ConfigError("token missing")

    root_url = normalize_root_url(base_url)

    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"bad pattern: {exc}") from exc

    return Settings(root_url=root_url, pattern=compiled, token=token, force=force)


# ── GitLab API Layer ──────────────────────────────────────────────────────


def gitlab_request(
    settings: Settings,
    session: requests.Session,
    method: str,
    url: str,
) -> bytes:
    """Send one authenticated request and return the response body."""
    redacted = {TOKEN_HEADER: REDACTED}
    logger.info(
        "performing HTTP request",
        extra={"fields": {"method": method, "url": url, "headers": redacted}},
    )

    try:
        response = session.request(
            method, url, headers={TOKEN_HEADER: settings.token}
        )
    except requests.RequestException as exc:
        raise TransportError(f"{method} {url} failed: {exc}") from exc

    if response.status_code > 299:
        raise TransportError(f"got HTTP status {response.status_code}")

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "got HTTP response",
            extra={
                "fields": {
                    "method": method,
                    "url": url,
                    "request_headers": redacted,
                    "body": response.text,
                }
            },
        )
    return response.content


def get_json(settings: Settings, session: requests.Session, url: str) -> Any:
    """GET a URL and decode its JSON body."""
    body = gitlab_request(settings, session, "GET", url)
    try:
        return json.loads(body)
    except ValueError as exc:
        raise DecodeError(f"invalid JSON from {url}: {exc}") from exc


def parse_runners(data: Any) -> List[Runner]:
    """Validate a decoded page and convert it into Runner records.

    A JSON null page counts as empty. A missing or null description is
    read as the empty string.
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise DecodeError(
            f"expected a JSON array of runners, got {type(data).__name__}"
        )

    runners = []
    for item in data:
        if not isinstance(item, dict):
            raise DecodeError(f"expected a runner object, got {item!r}")

        runner_id = item.get("id")
        if (
            not isinstance(runner_id, int)
            or isinstance(runner_id, bool)
            or not 0 <= runner_id <= MAX_RUNNER_ID
        ):
            raise DecodeError(f"invalid runner id: {runner_id!r}")

        description = item.get("description")
        if description is None:
            description = ""
        elif not isinstance(description, str):
            raise DecodeError(f"invalid runner description: {description!r}")

        runners.append(Runner(id=runner_id, description=description))

    return runners


# ── Collection ────────────────────────────────────────────────────────────


def collect_runners(
    settings: Settings, session: requests.Session
) -> Dict[str, int]:
    """Fetch every page of runners and map matching descriptions to ids.

    Paging stops at the first empty page; nothing after it is requested.
    Matches are keyed by description, so when two runners share one the
    runner seen last (on the later page) overwrites the earlier id.
    """
    collection = settings.runners_url
    matches: Dict[str, int] = {}
    page = 1

    while settings.max_pages is None or page <= settings.max_pages:
        data = get_json(settings, session, f"{collection}?page={page}")
        runners = parse_runners(data)
        logger.debug("fetched runners page %d (%d runners)", page, len(runners))

        if not runners:
            break

        for runner in runners:
            if settings.pattern.search(runner.description):
                matches[runner.description] = runner.id

        page += 1

    return matches


# ── Dispatch ──────────────────────────────────────────────────────────────


def delete_runner(
    settings: Settings, session: requests.Session, runner_id: int
) -> None:
    """Remove a single runner by id."""
    url = urljoin(settings.runners_url, str(runner_id))
    gitlab_request(settings, session, "DELETE", url)


def dispatch(
    settings: Settings,
    session: requests.Session,
    matches: Dict[str, int],
) -> int:
    """Delete every match with force, otherwise only report it.

    A failed deletion propagates at once; runners already deleted stay
    deleted.
    """
    for description, runner_id in matches.items():
        fields = {"id": runner_id, "description": description}
        if settings.force:
            delete_runner(settings, session, runner_id)
            logger.info("removed runner", extra={"fields": fields})
        else:
            logger.info("Not removed runner", extra={"fields": fields})

    return len(matches)


# ── CLI Argument Parser ───────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all supported flags."""
    parser = argparse.ArgumentParser(
        prog="gl-runner-cleanup",
        usage=(
            f"{TOKEN_ENV}=123456 %(prog)s -baseurl https://gitlab.example.com/"
            " -pattern test [-force]"
        ),
        description="Remove GitLab CI runners whose description matches a pattern.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""examples:
  TOKEN=... %(prog)s -baseurl https://gitlab.example.com/ -pattern '^ci-'
      List runners that would be removed
  TOKEN=... %(prog)s -baseurl https://gitlab.example.com/ -pattern '^ci-' -force
      Remove them
""",
    )

    parser.add_argument(
        "-baseurl",
        "--baseurl",
        dest="baseurl",
        default="",
        help="GitLab base URL, e.g. https://gitlab.example.com/",
    )
    parser.add_argument(
        "-pattern",
        "--pattern",
        dest="pattern",
        default="",
        help="Regular expression matched against runner descriptions",
    )
    parser.add_argument(
        "-force",
        "--force",
        dest="force",
        action="store_true",
        help="Delete matching runners instead of only listing them",
    )
    parser.add_argument(
        "-v",
        "-verbose",
        "--verbose",
        dest="verbose",
        action="store_true",
        help="Log response bodies",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {VERSION}",
    )

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


VALUE_OPTIONS = ("-baseurl", "--baseurl", "-pattern", "--pattern")


def attach_option_values(argv: List[str]) -> List[str]:
    """Join each value option with the word after it as ``-opt=value``.

    Lets a pattern start with a dash (``-pattern -docker``), which argparse
    would otherwise read as another flag.
    """
    joined: List[str] = []
    words = iter(argv)
    for word in words:
        if word in VALUE_OPTIONS:
            value = next(words, None)
            if value is not None:
                word = f"{word}={value}"
        joined.append(word)
    return joined


def run(settings: Settings, session: requests.Session) -> int:
    """Collect matching runners and act on them. Returns the match count."""
    matches = collect_runners(settings, session)
    return dispatch(settings, session, matches)


def main(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """Entry point. Returns exit code."""
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    args = parser.parse_args(attach_option_values(argv))

    setup_logging(args.verbose)

    try:
        settings = validate_inputs(args.baseurl, args.pattern, args.force, environ)
    except ConfigError as exc:
        print(Style.error(str(exc)), file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 2

    with requests.Session() as session:
        try:
            run(settings, session)
        except (TransportError, DecodeError) as exc:
            print(Style.error(str(exc)), file=sys.stderr)
            return 1

    return 0


def cli() -> None:
    """Console script entry point; maps Ctrl-C to exit status 130."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print(Style.warn("\nInterrupted."), file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    cli()
