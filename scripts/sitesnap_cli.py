#!/usr/bin/env python3
"""sitesnap CLI for submitting, watching, and downloading capture jobs."""

from __future__ import annotations

import json
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ContextManager, Iterable, Iterator, List, Optional, Tuple

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv
from rich.console import Console
from rich.table import Table

console = Console()
cli = typer.Typer(help="Interact with the sitesnap capture API", add_completion=False)

_DEFAULT_BASE_URL = "http://localhost:8000"
_TERMINAL_STATES = {"completed", "error", "cancelled"}
_FILENAME_PATTERN = re.compile(r'filename="?([^";]+)"?')


@dataclass
class APISettings:
    base_url: str
    owner_id: str
    cron_secret: Optional[str]


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
    else:
        config = DecoupleConfig(RepositoryEmpty())
    return APISettings(
        base_url=config("API_BASE_URL", default=_DEFAULT_BASE_URL),
        owner_id=config("SITESNAP_OWNER_ID", default="anonymous"),
        cron_secret=config("CRON_SECRET", default=None),
    )


def _resolve_settings(override_base: Optional[str], owner: Optional[str] = None) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    if owner:
        settings.owner_id = owner
    return settings


def _client_ctx(settings: APISettings, *, timeout: httpx.Timeout | float | None = 30.0) -> ContextManager[httpx.Client]:
    @contextmanager
    def _ctx() -> Iterator[httpx.Client]:
        client = httpx.Client(
            base_url=settings.base_url,
            timeout=timeout,
            headers={"X-Owner-Id": settings.owner_id},
        )
        try:
            yield client
        finally:
            client.close()

    return _ctx()


def _extract_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text or None
    if isinstance(payload, dict):
        detail = payload.get("detail")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return json.dumps(detail)
    return None


def _fail_on_error(response: httpx.Response, *, context: str) -> None:
    if response.status_code < 400:
        return
    detail = _extract_detail(response) or f"HTTP {response.status_code}"
    console.print(f"[red]{context}: {detail}[/]")
    raise typer.Exit(1)


def _iter_sse(response: httpx.Response) -> Iterable[Tuple[str, str]]:
    event = "message"
    data_lines: list[str] = []
    for line in response.iter_lines():
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event = "message"
            data_lines = []
            continue
        if line.startswith("event:"):
            event = line.split(":", 1)[1].strip()
        elif line.startswith("data:"):
            data_lines.append(line.split(":", 1)[1].strip())
    if data_lines:
        yield event, "\n".join(data_lines)


def _print_job(job: dict[str, Any]) -> None:
    table = Table("Field", "Value", title=f"Job {job.get('job_id', 'unknown')}")
    for key in (
        "status",
        "seed_url",
        "devices",
        "progress",
        "discovered_pages",
        "page_budget",
        "error_message",
        "download_count",
        "created_at",
        "expires_at",
    ):
        value = job.get(key)
        if isinstance(value, (dict, list)):
            value = ", ".join(str(item) for item in value) if isinstance(value, list) else json.dumps(value)
        table.add_row(key, "-" if value is None else str(value))
    mapping = job.get("file_mapping") or []
    if mapping:
        table.add_row("files", str(len(mapping)))
    console.print(table)


def _format_progress(payload: str) -> str:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return payload
    if not isinstance(data, dict):
        return payload
    text = f"{data.get('progress', 0)}%"
    discovered = data.get("discovered_pages")
    if discovered is not None:
        text += f" ({discovered} pages)"
    return text


def _stream_job(job_id: str, settings: APISettings, *, raw: bool) -> str | None:
    """Print SSE events until the job reaches a terminal state; returns that state."""

    final_state: str | None = None
    with _client_ctx(settings, timeout=None) as client:
        with client.stream("GET", f"/captures/{job_id}/stream") as response:
            if response.status_code >= 400:
                response.read()
                _fail_on_error(response, context=f"Cannot watch job {job_id}")
            for event, payload in _iter_sse(response):
                if event == "heartbeat":
                    continue
                if raw:
                    console.print(f"{event}\t{payload}")
                elif event == "state":
                    console.print(f"[cyan]state[/] {payload}")
                elif event == "progress":
                    console.print(f"[green]progress[/] {_format_progress(payload)}")
                elif event == "error":
                    console.print(f"[red]error[/] {payload}")
                else:
                    console.print(f"{event}: {payload}")
                if event == "state" and payload.strip() in _TERMINAL_STATES:
                    final_state = payload.strip()
    return final_state


def _write_binary_output(content: bytes, path: Path, *, description: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    console.print(f"[green]Saved {description} to {path}[/]")


def _filename_from_response(response: httpx.Response, fallback: str) -> str:
    disposition = response.headers.get("content-disposition", "")
    match = _FILENAME_PATTERN.search(disposition)
    if match:
        return Path(match.group(1)).name
    return fallback


@cli.command()
def capture(
    url: str = typer.Argument(..., help="Seed URL to capture"),
    device: Optional[List[str]] = typer.Option(
        None, "--device", "-d", help="Device profile (desktop, tablet, mobile). Repeat for several."
    ),
    max_pages: int = typer.Option(1, "--max-pages", min=1, help="Page budget for same-origin discovery."),
    all_pages: bool = typer.Option(False, "--all-pages", help="Use the server's maximum page budget."),
    keep_popups: bool = typer.Option(False, "--keep-popups", help="Leave cookie banners and modals in place."),
    watch_job: bool = typer.Option(False, "--watch", help="Stream progress until the job finishes."),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
) -> None:
    """Submit a capture job."""

    settings = _resolve_settings(api_base, owner)
    options: dict[str, Any] = {
        "max_pages": max_pages,
        "all_pages": all_pages,
        "exclude_popups": not keep_popups,
    }
    if device:
        options["devices"] = device
    with _client_ctx(settings) as client:
        response = client.post("/captures", json={"url": url, "options": options})
        _fail_on_error(response, context="Capture rejected")
        payload = response.json()
    job_id = payload["job_id"]
    console.print(f"[green]Accepted job {job_id}[/] (expires {payload.get('expires_at')})")
    if watch_job:
        final_state = _stream_job(job_id, settings, raw=False)
        if final_state and final_state != "completed":
            raise typer.Exit(1)


@cli.command()
def show(
    job_id: str = typer.Argument(..., help="Job identifier"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON payload instead of a table."),
) -> None:
    """Display the current status of a job."""

    settings = _resolve_settings(api_base, owner)
    with _client_ctx(settings) as client:
        response = client.get(f"/captures/{job_id}")
        _fail_on_error(response, context=f"Job {job_id}")
        job = response.json()
    if json_output:
        console.print_json(data=job)
        return
    _print_job(job)


@cli.command("list")
def list_jobs(
    limit: int = typer.Option(20, "--limit", min=1, help="Maximum jobs to show."),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
) -> None:
    """List recent jobs for the owner, newest first."""

    settings = _resolve_settings(api_base, owner)
    with _client_ctx(settings) as client:
        response = client.get("/captures", params={"limit": limit})
        _fail_on_error(response, context="Listing failed")
        jobs = response.json()
    if not jobs:
        console.print("[dim]No jobs yet.[/]")
        return
    table = Table("Job", "Status", "Progress", "URL", "Devices", "Expires", title=f"Jobs for {settings.owner_id}")
    for job in jobs:
        table.add_row(
            str(job.get("job_id", ""))[:8],
            str(job.get("status", "")),
            f"{job.get('progress', 0)}%",
            str(job.get("seed_url", "")),
            ", ".join(job.get("devices") or []),
            str(job.get("expires_at", "")),
        )
    console.print(table)


@cli.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job identifier"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
) -> None:
    """Request cancellation of a processing job."""

    settings = _resolve_settings(api_base, owner)
    with _client_ctx(settings) as client:
        response = client.put(f"/captures/{job_id}/cancel")
        _fail_on_error(response, context=f"Cannot cancel {job_id}")
    console.print(f"[yellow]Job {job_id} cancelled.[/]")


@cli.command()
def download(
    job_id: str = typer.Argument(..., help="Job identifier"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output file or directory."),
    archive_format: str = typer.Option("zip", "--format", help="Archive format: zip or tar.zst."),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
) -> None:
    """Download a completed job's screenshots as an archive."""

    settings = _resolve_settings(api_base, owner)
    with _client_ctx(settings, timeout=None) as client:
        response = client.get(f"/captures/{job_id}/download", params={"format": archive_format})
        _fail_on_error(response, context=f"Download of {job_id} failed")
        filename = _filename_from_response(response, f"{job_id}.{archive_format}")
        content = response.content
        skipped = response.headers.get("x-skipped-files")
    if out is None:
        target = Path(filename)
    elif out.is_dir():
        target = out / filename
    else:
        target = out
    _write_binary_output(content, target, description="archive")
    if skipped:
        console.print(f"[yellow]{skipped} screenshot(s) could not be read and were left out.[/]")


@cli.command()
def watch(
    job_id: str = typer.Argument(..., help="Job identifier"),
    raw: bool = typer.Option(False, "--raw", help="Print raw SSE payloads."),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    owner: Optional[str] = typer.Option(None, help="Owner id sent as X-Owner-Id"),
) -> None:
    """Tail the live SSE stream for a job until it finishes."""

    settings = _resolve_settings(api_base, owner)
    final_state = _stream_job(job_id, settings, raw=raw)
    if final_state and final_state != "completed":
        raise typer.Exit(1)


@cli.command()
def sweep(
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Trigger the expiry sweep (uses CRON_SECRET when set)."""

    settings = _resolve_settings(api_base)
    headers = {"Authorization": f"Bearer {settings.cron_secret}"} if settings.cron_secret else {}
    with _client_ctx(settings) as client:
        response = client.post("/maintenance/sweep", headers=headers)
        _fail_on_error(response, context="Sweep failed")
        report = response.json()
    console.print(
        f"Removed {report.get('deleted_jobs', 0)} jobs and {report.get('deleted_files', 0)} files."
    )
    for error in report.get("errors") or []:
        console.print(f"[red]{error}[/]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
