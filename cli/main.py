#!/usr/bin/env python3
"""
ReelWatch CLI - Command line interface for the transcoding job tracker.

Talks to the admin API; set REELWATCH_ADMIN_API_SECRET to authenticate.
"""

import argparse
import os
import sys

import httpx
from rich.console import Console
from rich.table import Table

from api.errors import truncate_error
from config import (
    ADMIN_API_SECRET,
    ADMIN_PORT,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    STUCK_THRESHOLD_MINUTES,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("REELWATCH_API_TIMEOUT", "30"))

# Retries sleep between attempts server-side, so they get a much longer timeout
RETRY_API_TIMEOUT = int(os.getenv("REELWATCH_RETRY_API_TIMEOUT", "1800"))

# Admin API URL - can override host and port, or use the port from config
_default_api_url = f"http://localhost:{ADMIN_PORT}"
API_BASE = os.getenv("REELWATCH_ADMIN_API_URL", _default_api_url).rstrip("/") + "/admin"

console = Console()

STATE_STYLES = {
    "queued": "yellow",
    "in_progress": "cyan",
    "ready": "green",
    "failed": "red",
}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def handle_auth_error(response) -> None:
    """Turn auth failures into a helpful CLIError."""
    if response.status_code == 401:
        raise CLIError(
            "Authentication required. Set the REELWATCH_ADMIN_API_SECRET environment variable."
        )
    if response.status_code == 403:
        raise CLIError(
            "Authentication failed - invalid secret. "
            "Check that REELWATCH_ADMIN_API_SECRET matches the server configuration."
        )


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def api_request(method: str, path: str, timeout: float = DEFAULT_API_TIMEOUT, **kwargs):
    """Call the admin API and return the decoded JSON body."""
    url = f"{API_BASE}{path}"
    try:
        response = httpx.request(method, url, headers=get_admin_headers(), timeout=timeout, **kwargs)
    except httpx.ConnectError:
        raise CLIError(f"Could not connect to admin API at {API_BASE}. Make sure the admin server is running.")
    except httpx.TimeoutException:
        raise CLIError(f"Request timed out after {timeout}s while connecting to {API_BASE}")
    handle_auth_error(response)
    return safe_json_response(response)


def _state(value: str) -> str:
    style = STATE_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _short_time(value) -> str:
    # ISO timestamps from the API; drop sub-second precision for display
    if not value:
        return "-"
    return value.replace("T", " ")[:19]


def print_stats(stats: dict) -> None:
    table = Table(title="Jobs by state")
    table.add_column("Queued", justify="right")
    table.add_column("In progress", justify="right")
    table.add_column("Ready", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Avg processing (min)", justify="right")
    table.add_row(
        str(stats["queued"]),
        str(stats["inProgress"]),
        str(stats["ready"]),
        str(stats["failed"]),
        str(stats["totalJobs"]),
        f"{stats['averageProcessingMinutes']:.1f}",
    )
    console.print(table)


def print_job(job: dict) -> None:
    console.print(f"Job {job['id']}: {job['title']}")
    console.print(f"  State: {_state(job['state'])} ({job['progressPercent']}%)")
    console.print(f"  External ID: {job.get('externalId') or '-'}")
    if job.get("errorCode") or job.get("errorMessage"):
        console.print(f"  Error: {job.get('errorCode') or 'unknown'}: {job.get('errorMessage') or ''}")
    if job.get("reopenCount"):
        console.print(f"  Reopened: {job['reopenCount']} time(s)")
    console.print(f"  Created: {_short_time(job.get('createdAt'))}")
    console.print(f"  Updated: {_short_time(job.get('updatedAt'))}")


def print_attempts(attempts: list) -> None:
    if not attempts:
        console.print("No retry attempts recorded.")
        return
    table = Table(title="Retry attempts")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Result")
    table.add_column("Error")
    for attempt in attempts:
        table.add_row(
            str(attempt["attemptNumber"]),
            _short_time(attempt.get("attemptedAt")),
            "[green]success[/green]" if attempt["success"] else "[red]failed[/red]",
            truncate_error(attempt.get("error") or "", ERROR_SUMMARY_MAX_LENGTH),
        )
    console.print(table)


def print_poll_errors(errors: list) -> None:
    for error in errors:
        console.print(f"  [red]job {error['jobId']}[/red]: {error['error']}")


def cmd_monitor(args):
    """Show job counts and, optionally, stuck jobs."""
    params = {"includeStuck": str(args.stuck).lower(), "stuckThresholdMinutes": args.threshold}
    result = api_request("GET", "/jobs/monitor", params=params)
    print_stats(result["stats"])

    if not args.stuck:
        return
    stuck = result.get("stuckJobs") or []
    if not stuck:
        console.print(f"No jobs stuck for more than {args.threshold} minutes.")
        return

    table = Table(title=f"Stuck jobs (no update for > {args.threshold} min)")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("State")
    table.add_column("Progress", justify="right")
    table.add_column("Last update")
    table.add_column("Expected (min)", justify="right")
    for job in stuck:
        table.add_row(
            str(job["id"]),
            job["title"],
            _state(job["state"]),
            f"{job['progress']}%",
            _short_time(job.get("updatedAt")),
            str(job["expectedThresholdMinutes"]),
        )
    console.print(table)


def cmd_poll(args):
    """Run one reconciliation poll cycle now."""
    result = api_request("POST", "/jobs/monitor")
    console.print(f"Checked {result['checked']} job(s), updated {result['updated']}.")
    if result["errors"]:
        console.print(f"{len(result['errors'])} error(s):")
        print_poll_errors(result["errors"])
    print_stats(result["stats"])


def cmd_retry(args):
    """Retry one failed job, or all of them."""
    payload = {}
    if args.job_id is not None:
        payload["jobId"] = args.job_id
    if args.max_retries is not None:
        payload["maxRetries"] = args.max_retries

    with console.status("Retrying (this waits out the backoff between attempts)..."):
        result = api_request("POST", "/jobs/retry", json=payload, timeout=RETRY_API_TIMEOUT)

    style = "green" if result["success"] else "red"
    console.print(f"[{style}]{result['message']}[/{style}]")
    if result.get("attempts") is not None:
        print_attempts(result["attempts"])


def cmd_status(args):
    """Check one job's live status on the transcoding service."""
    result = api_request("GET", "/jobs/status", params={"externalId": args.external_id})
    console.print(f"Transcoding service reports: {_state(result['state'])} ({result['progressPercent']}%)")
    if result.get("errorMessage"):
        console.print(f"  {result.get('errorCode') or 'error'}: {result['errorMessage']}")
    console.print("Local record updated." if result["applied"] else "Local record already up to date.")
    print_job(result["job"])


def cmd_attempts(args):
    """Show (or clear) a job's retry history."""
    if args.clear:
        result = api_request("DELETE", f"/jobs/{args.job_id}/retry-attempts")
        console.print(f"Cleared {result['cleared']} retry attempt(s) for job {args.job_id}.")
        return

    job = api_request("GET", f"/jobs/{args.job_id}")
    print_job(job)
    print_attempts(job.get("retryAttempts") or [])


def cmd_create(args):
    """Register a job with the tracker."""
    payload = {"title": args.title}
    if args.external_id:
        payload["externalId"] = args.external_id
    job = api_request("POST", "/jobs", json=payload)
    console.print("Job registered.")
    print_job(job)


def cmd_attach(args):
    """Attach the transcoding service's id to an existing job."""
    job = api_request("PUT", f"/jobs/{args.job_id}/external-id", json={"externalId": args.external_id})
    console.print("External ID attached.")
    print_job(job)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reelwatch", description="ReelWatch CLI - Track transcoding jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor_parser = subparsers.add_parser("monitor", help="Show job counts per state")
    monitor_parser.add_argument("--stuck", action="store_true", help="Also list stuck jobs")
    monitor_parser.add_argument(
        "--threshold",
        type=positive_int,
        default=STUCK_THRESHOLD_MINUTES,
        help=f"Stuck threshold in minutes (default: {STUCK_THRESHOLD_MINUTES})",
    )
    monitor_parser.set_defaults(func=cmd_monitor)

    poll_parser = subparsers.add_parser("poll", help="Run one reconciliation poll cycle now")
    poll_parser.set_defaults(func=cmd_poll)

    retry_parser = subparsers.add_parser("retry", help="Retry a failed job (or all failed jobs)")
    retry_parser.add_argument("job_id", nargs="?", type=positive_int, help="Job ID (default: all failed jobs)")
    retry_parser.add_argument("-n", "--max-retries", type=positive_int, help="Retry budget for this run")
    retry_parser.set_defaults(func=cmd_retry)

    status_parser = subparsers.add_parser("status", help="Check a job's live status by external ID")
    status_parser.add_argument("external_id", help="Transcoding service job ID")
    status_parser.set_defaults(func=cmd_status)

    attempts_parser = subparsers.add_parser("attempts", help="Show a job's retry history")
    attempts_parser.add_argument("job_id", type=positive_int, help="Job ID")
    attempts_parser.add_argument("--clear", action="store_true", help="Clear the history (restores the retry budget)")
    attempts_parser.set_defaults(func=cmd_attempts)

    create_parser = subparsers.add_parser("create", help="Register a job")
    create_parser.add_argument("title", help="Video title")
    create_parser.add_argument("-e", "--external-id", help="Transcoding service job ID, if already known")
    create_parser.set_defaults(func=cmd_create)

    attach_parser = subparsers.add_parser("attach", help="Attach a transcoding service job ID to a job")
    attach_parser.add_argument("job_id", type=positive_int, help="Job ID")
    attach_parser.add_argument("external_id", help="Transcoding service job ID")
    attach_parser.set_defaults(func=cmd_attach)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
