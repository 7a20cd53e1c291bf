from __future__ import annotations

import json
import os
import sys
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from rich.console import Console


class AccessCliError(Exception):
    pass


class UsageError(AccessCliError):
    pass


class OpError(AccessCliError):
    pass


DF_ACCESS_ENDPOINT = "DF_ACCESS_ENDPOINT"
DF_ACCESS_ID_TOKEN = "DF_ACCESS_ID_TOKEN"

_STDERR = Console(stderr=True)


def _rich_error(message: str) -> None:
    _STDERR.print(f"[bold red]df-access:[/bold red] {message}", highlight=False)


def _env_or_none(*names: str) -> str | None:
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None


def _require_str(value: str | None, what: str, *, hint: str) -> str:
    cleaned = (value or "").strip()
    if cleaned:
        return cleaned
    raise UsageError(f"{what} is required; {hint}")


def _print_json(doc: Any, *, pretty: bool) -> None:
    if pretty:
        text = json.dumps(doc, indent=2, sort_keys=True)
    else:
        text = json.dumps(doc, separators=(",", ":"), sort_keys=True)
    sys.stdout.write(text + "\n")


def credentials_url(endpoint: str, *, domain_id: str, project_id: str, asset_listing_id: str) -> str:
    base = endpoint.strip().rstrip("/")
    if not base:
        raise UsageError("endpoint is required")
    segments = (
        ("domains", domain_id),
        ("projects", project_id),
        ("assets", asset_listing_id),
    )
    path = "/".join(f"{kind}/{quote(value, safe='')}" for kind, value in segments)
    return f"{base}/{path}/credentials"


def _http_post_json(
    *,
    url: str,
    headers: dict[str, str],
    body: bytes = b"",
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    """POST and return (status, lowercased headers, body); HTTP error statuses are returned, not raised."""
    req = Request(url, data=body, method="POST", headers=headers)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            return int(resp.status), {k.lower(): v for k, v in resp.headers.items()}, resp.read()
    except HTTPError as e:
        return int(e.code or 0), {k.lower(): v for k, v in (e.headers or {}).items()}, e.read()
    except URLError as e:
        raise OpError(f"could not reach {url}: {e.reason}") from e


def _load_json_object(*, raw: str, label: str) -> dict[str, Any]:
    try:
        doc = json.loads(raw)
    except ValueError as e:
        raise OpError(f"{label} is not JSON: {e}") from e
    if isinstance(doc, dict):
        return doc
    raise OpError(f"{label} must be a JSON object")
