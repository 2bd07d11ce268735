# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
# ]
# ///
"""Lighthouse API client.

Wraps the PageSpeed Online ``runPagespeed`` endpoint: builds the audit
query, validates the JSON envelope and returns the Lighthouse report (LHR)
together with any Chrome UX Report (CrUX) field data. Also ships a small
CLI that audits URLs and stores the normalized results.
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import logging
import os
import re
import sys
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import httpx
import pandas as pd
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

__version__ = "1.0.0"

logger = logging.getLogger("lighthouse_api")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_API_SCOPE = "https://www.googleapis.com/pagespeedonline"
API_VERSION = "v5"

AUDIT_LOCALE = "en_US"
AUDIT_STRATEGY = "mobile"
CAPTCHA_NOT_NEEDED = "CAPTCHA_NOT_NEEDED"

DEFAULT_TIMEOUT = 120
DEFAULT_OUTPUT_DIR = "./lighthouse-results"

REFERENCE_LHR_PATH = Path(__file__).with_name("lhr.json")

CONFIG_FILENAMES = ["lighthouse.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-api",
]
API_KEY_ENV_VARS = ("LIGHTHOUSE_API_KEY", "PAGESPEED_API_KEY")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseAPIError(Exception):
    """Base class for failed Lighthouse API audits."""


class HttpError(LighthouseAPIError):
    """The API answered with a non-success HTTP status."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"{status_code} from Lighthouse API: {reason}")


class MalformedResponseError(LighthouseAPIError):
    """The response body (or the embedded report) is not usable JSON."""


class CaptchaError(LighthouseAPIError):
    """The API requires CAPTCHA verification before auditing."""

    def __init__(self, captcha_result: str):
        self.captcha_result = captcha_result
        super().__init__(f"Lighthouse API response: {captcha_result}")


class ApiError(LighthouseAPIError):
    """The API reported an application-level error."""

    def __init__(self, errors):
        self.errors = errors
        super().__init__(errors)


class MissingReportError(LighthouseAPIError):
    """A success-shaped response carried no lighthouseResponse."""


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def load_categories(path: Path) -> tuple[str, ...]:
    """Return the category ids of a reference Lighthouse report, in document order."""
    with open(path, encoding="utf-8") as fh:
        reference = json.load(fh)
    return tuple(reference["categories"])


def api_category_name(category: str) -> str:
    """Translate a category id to the name the API expects.

    The API wants ``best_practices`` rather than ``best-practices``.
    """
    return category.replace("-", "_")


# Loaded once; read-only for the life of the process.
LHR_CATEGORIES = load_categories(REFERENCE_LHR_PATH)


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def build_audit_params(
    api_key: str,
    url: str,
    categories: tuple[str, ...] | list[str] = LHR_CATEGORIES,
) -> list[tuple[str, str]]:
    """Build the ordered query pairs for a runPagespeed request.

    A list of pairs is used instead of a dict so ``category`` can repeat.
    """
    params = [
        ("key", api_key),
        ("locale", AUDIT_LOCALE),
        ("strategy", AUDIT_STRATEGY),
    ]
    params.extend(("category", api_category_name(cat)) for cat in categories)
    params.append(("url", url))
    return params


def _is_populated(value) -> bool:
    """Truthiness as the API's JSON clients see it: objects and arrays count even when empty."""
    if isinstance(value, (dict, list)):
        return True
    return bool(value)


def normalize_audit_payload(payload: dict) -> dict:
    """Validate a decoded runPagespeed body and return ``{"lhr", "crux"}``."""
    captcha_result = payload.get("captchaResult")
    if _is_populated(captcha_result) and captcha_result != CAPTCHA_NOT_NEEDED:
        raise CaptchaError(captcha_result)

    error = payload.get("error")
    if _is_populated(error):
        raise ApiError(error.get("errors") if isinstance(error, dict) else error)

    lhr = payload.get("lighthouseResponse")
    if not _is_populated(lhr):
        raise MissingReportError("Lighthouse API response: missing lighthouseResponse.")

    # The report usually arrives JSON-encoded inside the JSON body, but
    # may also be sent as a plain object.
    if isinstance(lhr, str):
        try:
            lhr = json.loads(lhr)
        except ValueError as exc:
            raise MalformedResponseError(f"Lighthouse API response: undecodable lighthouseResponse: {exc}") from exc
        if not isinstance(lhr, dict):
            raise MalformedResponseError("Lighthouse API response: lighthouseResponse is not an object.")
    elif isinstance(lhr, dict):
        lhr = dict(lhr)
    else:
        raise MalformedResponseError(
            f"Lighthouse API response: unexpected lighthouseResponse type {type(lhr).__name__}."
        )
    lhr.pop("i18n", None)

    # Only copy field data the API actually populated; downstream stores
    # reject null-valued keys.
    crux = {}
    if _is_populated(payload.get("loadingExperience")):
        crux["loadingExperience"] = payload["loadingExperience"]
    if _is_populated(payload.get("originLoadingExperience")):
        crux["originLoadingExperience"] = payload["originLoadingExperience"]

    return {"lhr": lhr, "crux": crux}


def parse_audit_response(response: httpx.Response) -> dict:
    """Check the HTTP status, decode the body and normalize it."""
    if not response.is_success:
        raise HttpError(response.status_code, response.reason_phrase)

    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError(f"Lighthouse API response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError("Lighthouse API response is not a JSON object.")

    return normalize_audit_payload(payload)


class AuditClient:
    """Wrapper for interactions with the Lighthouse API.

    Instances hold only the API key and endpoint, so one client can serve
    any number of concurrent ``audit`` calls.
    """

    version = API_VERSION

    def __init__(
        self,
        api_key: str,
        scope: str = DEFAULT_API_SCOPE,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ):
        self.api_key = api_key
        self.scope = scope.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def endpoints(cls, scope: str = DEFAULT_API_SCOPE) -> dict[str, str]:
        scope = scope.rstrip("/")
        return {
            "scope": scope,
            "audit": f"{scope}/{cls.version}/runPagespeed",
        }

    @property
    def audit_endpoint(self) -> str:
        return self.endpoints(self.scope)["audit"]

    async def _get(self, params: list[tuple[str, str]]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.audit_endpoint, params=params)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.audit_endpoint, params=params)

    async def audit(self, url: str) -> dict:
        """Audit a site.

        Returns ``{"lhr": <report>, "crux": <field data>}``. Any failure is
        logged and re-raised to the caller unchanged.
        """
        params = build_audit_params(self.api_key, url)
        try:
            logger.debug("Requesting Lighthouse audit for %s", url)
            response = await self._get(params)
            return parse_audit_response(response)
        except Exception as exc:
            logger.error("Lighthouse audit failed for %s: %s", url, exc)
            raise


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path(search_paths: list[Path] | None = None) -> Path | None:
    """Return the first ``lighthouse.toml`` found, cwd before ~/.config."""
    candidates = (
        directory / name
        for directory in (search_paths or CONFIG_SEARCH_PATHS)
        for name in CONFIG_FILENAMES
    )
    return next((path for path in candidates if path.is_file()), None)


def load_config(config_path: Path | None) -> dict:
    """Read [settings] and [profiles] from a TOML file. Exits on an unusable file."""
    if config_path is None:
        return {}
    try:
        return tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, OSError, UnicodeDecodeError) as exc:
        problem = "malformed" if isinstance(exc, tomllib.TOMLDecodeError) else "unreadable"
        print(f"Error: {problem} config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Environment (API key only)
      5. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "api_scope": "api_scope",
        "output_dir": "output_dir",
        "summary_csv": "summary_csv",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        for env_var in API_KEY_ENV_VARS:
            env_key = os.environ.get(env_var)
            if env_key:
                args.api_key = env_key
                break

    return args


def configure_logging(verbose: bool) -> None:
    """Send library logs to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Store the value and note the dest in ``_explicit_args``.

    apply_profile() never overrides a dest listed there.
    """

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        namespace._explicit_args = [*getattr(namespace, "_explicit_args", []), self.dest]


class TrackingStoreTrueAction(TrackingAction):
    """store_true flavour of TrackingAction."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings, dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        super().__call__(parser, namespace, self.const, option_string)


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-api",
        description="Run Lighthouse audits through the PageSpeed Online API",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set LIGHTHOUSE_API_KEY env var)")
    parser.add_argument("--api-scope", dest="api_scope", action=TrackingAction, default=DEFAULT_API_SCOPE, help="API scope URL the endpoint is built from")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose logging to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- audit ---
    audit_parser = subparsers.add_parser("audit", help="Audit URLs and save the Lighthouse results")
    audit_parser.add_argument("urls", nargs="+", help="URLs to audit")
    audit_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for result JSON files")
    audit_parser.add_argument("--summary-csv", dest="summary_csv", action=TrackingAction, default=None, help="Also write a CSV score summary to this path")
    audit_parser.add_argument("--no-save", dest="no_save", action=TrackingStoreTrueAction, default=False, help="Do not write result JSON files")

    # --- categories ---
    subparsers.add_parser("categories", help="List the audit categories requested from the API")

    return parser


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def summarize_result(url: str, result: dict | None, error: str | None = None) -> dict:
    """Flatten an audit result into a single summary row."""
    row: dict[str, object] = {"url": url, "error": error}

    lhr = (result or {}).get("lhr", {})
    crux = (result or {}).get("crux", {})
    categories = lhr.get("categories", {})
    for category in LHR_CATEGORIES:
        score = categories.get(category, {}).get("score")
        row[f"{api_category_name(category)}_score"] = round(score * 100) if score is not None else None

    row["lighthouse_version"] = lhr.get("lighthouseVersion")
    row["fetch_time"] = lhr.get("fetchTime")
    row["field_category"] = crux.get("loadingExperience", {}).get("overall_category")
    row["origin_field_category"] = crux.get("originLoadingExperience", {}).get("overall_category")
    return row


def format_terminal_table(rows: dict | list[dict]) -> Table:
    """Build a rich table of category scores, one row per URL."""
    if isinstance(rows, dict):
        rows = [rows]

    table = Table(title="Lighthouse audit", show_lines=False)
    table.add_column("URL", overflow="fold")
    for category in LHR_CATEGORIES:
        table.add_column(category, justify="right")
    table.add_column("CrUX")

    for row in rows:
        if row.get("error"):
            table.add_row(
                escape(row.get("url", "?")),
                *([""] * len(LHR_CATEGORIES)),
                f"[red]Error: {escape(str(row['error']))}[/red]",
            )
            continue
        cells = []
        for category in LHR_CATEGORIES:
            score = row.get(f"{api_category_name(category)}_score")
            if score is None:
                cells.append("-")
            elif score >= 90:
                cells.append(f"[green]{score}[/green]")
            elif score >= 50:
                cells.append(f"[yellow]{score}[/yellow]")
            else:
                cells.append(f"[red]{score}[/red]")
        table.add_row(escape(row.get("url", "?")), *cells, row.get("field_category") or "-")

    return table


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def url_slug(url: str) -> str:
    """Turn a URL (host, path and query) into a filesystem-friendly name fragment."""
    parsed = urlparse(url)
    raw = "-".join(part for part in (parsed.netloc, parsed.path, parsed.query) if part) if parsed.netloc else url
    slug = re.sub(r"[^A-Za-z0-9]+", "-", raw).strip("-").lower()
    return slug[:80] or "result"


def result_path_candidates(output_dir: str, url: str):
    """Yield ``<UTC stamp>-<slug>.json`` in output_dir, then ``-2``, ``-3``... variants."""
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    stem = f"{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}-{url_slug(url)}"
    yield dir_path / f"{stem}.json"
    for index in itertools.count(2):
        yield dir_path / f"{stem}-{index}.json"


def write_audit_result(output_dir: str, url: str, result: dict) -> str:
    """Write one normalized audit result as JSON. Returns the file path.

    Never replaces an existing file: slugs collide for URLs differing only
    in scheme or past the slug length, and for repeated URLs.
    """
    record = {
        "url": url,
        "fetched_at": datetime.now(timezone.utc).isoformat(),
        "lhr": result["lhr"],
        "crux": result["crux"],
    }
    for candidate in result_path_candidates(output_dir, url):
        try:
            fh = open(candidate, "x", encoding="utf-8")
        except FileExistsError:
            continue
        with fh:
            json.dump(record, fh, indent=2)
        return str(candidate)


def write_summary_csv(rows: list[dict], output_path: Path) -> str:
    """Write summary rows as CSV through pandas. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(output_path, index=False)
    return str(output_path)


# ---------------------------------------------------------------------------
# Subcommand: audit
# ---------------------------------------------------------------------------


async def audit_urls(client: AuditClient, urls: list[str]) -> list[tuple[str, dict | None, str | None]]:
    """Audit each URL in turn. Failures are recorded, not raised."""
    outcomes = []
    for url in urls:
        try:
            result = await client.audit(url)
        except (LighthouseAPIError, httpx.HTTPError) as exc:
            outcomes.append((url, None, str(exc) or type(exc).__name__))
            continue
        outcomes.append((url, result, None))
    return outcomes


async def _run_audits(args: argparse.Namespace) -> list[tuple[str, dict | None, str | None]]:
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as http_client:
        client = AuditClient(args.api_key, scope=args.api_scope, client=http_client)
        return await audit_urls(client, args.urls)


def cmd_audit(args: argparse.Namespace) -> None:
    """Audit the given URLs, save results and print a score summary."""
    if not args.api_key:
        print("Error: no API key. Use --api-key, a config file, or LIGHTHOUSE_API_KEY.", file=sys.stderr)
        sys.exit(1)

    print(f"Auditing {len(args.urls)} URL(s)", file=sys.stderr)
    outcomes = asyncio.run(_run_audits(args))

    rows = []
    written_files = []
    for url, result, error in outcomes:
        rows.append(summarize_result(url, result, error))
        if result is not None and not args.no_save:
            written_files.append(write_audit_result(args.output_dir, url, result))

    Console().print(format_terminal_table(rows))

    if args.summary_csv:
        written_files.append(write_summary_csv(rows, Path(args.summary_csv)))

    if written_files:
        print("\nResults written to:", file=sys.stderr)
        for filepath in written_files:
            print(f"  {filepath}", file=sys.stderr)

    failed = sum(1 for _, _, error in outcomes if error)
    if failed:
        print(f"Errors: {failed} of {len(outcomes)} URL(s) failed", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Subcommand: categories
# ---------------------------------------------------------------------------


def cmd_categories(args: argparse.Namespace) -> None:
    """Print the category set and the name sent to the API for each."""
    for category in LHR_CATEGORIES:
        print(f"{category}\t{api_category_name(category)}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)
    configure_logging(args.verbose)

    commands = {
        "audit": cmd_audit,
        "categories": cmd_categories,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
