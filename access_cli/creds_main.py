from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass

import click
import typer

from . import __version__
from .cli_shared import (
    DF_ACCESS_ENDPOINT,
    DF_ACCESS_ID_TOKEN,
    OpError,
    UsageError,
    _env_or_none,
    _http_post_json,
    _load_json_object,
    _print_json,
    _require_str,
    _rich_error,
    credentials_url,
)

CREDENTIAL_KEYS = ("AccessKeyId", "SecretAccessKey", "SessionToken", "Expiration")


@dataclass(frozen=True)
class GlobalOpts:
    endpoint: str
    id_token: str
    pretty: bool


app = typer.Typer(
    name="df-access",
    help="Request short-lived credentials for a subscribed data asset.",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"df-access {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        help=f"Access management API base URL (env override: {DF_ACCESS_ENDPOINT})",
    ),
    id_token: str | None = typer.Option(
        None,
        "--id-token",
        help=f"Identity token for the API authorizer (env override: {DF_ACCESS_ID_TOKEN})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = {
        "g": GlobalOpts(
            endpoint=_require_str(
                endpoint or _env_or_none(DF_ACCESS_ENDPOINT),
                "endpoint",
                hint=f"pass --endpoint or set {DF_ACCESS_ENDPOINT}",
            ),
            id_token=_require_str(
                id_token or _env_or_none(DF_ACCESS_ID_TOKEN),
                "id token",
                hint=f"pass --id-token or set {DF_ACCESS_ID_TOKEN}",
            ),
            pretty=not plain_json,
        )
    }


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    return ctx.obj["g"]


def fetch_credentials(
    g: GlobalOpts, *, domain_id: str, project_id: str, asset_listing_id: str
) -> dict[str, str]:
    url = credentials_url(
        g.endpoint,
        domain_id=domain_id,
        project_id=project_id,
        asset_listing_id=asset_listing_id,
    )
    status, _hdrs, raw = _http_post_json(
        url=url,
        headers={"authorization": g.id_token, "content-type": "application/json"},
    )
    text = raw.decode("utf-8", errors="replace")
    if status == 403:
        raise OpError(f"not authorized for asset listing {asset_listing_id} in project {project_id}")
    if status == 404:
        raise OpError(f"asset listing {asset_listing_id} not found")
    if status < 200 or status >= 300:
        raise OpError(f"credentials request failed: status={status} body={text}")
    doc = _load_json_object(raw=text, label="credentials response")
    missing = [k for k in CREDENTIAL_KEYS if not str(doc.get(k) or "").strip()]
    if missing:
        raise OpError(f"credentials response is missing: {', '.join(missing)}")
    return {k: str(doc[k]) for k in CREDENTIAL_KEYS}


@app.command("credentials")
def credentials_cmd(
    ctx: typer.Context,
    domain_id: str = typer.Argument(..., help="Domain id"),
    project_id: str = typer.Argument(..., help="Subscribing project id"),
    asset_listing_id: str = typer.Argument(..., help="Asset listing id"),
) -> None:
    """Print the raw credentials document."""
    g = _ctx_global(ctx)
    creds = fetch_credentials(
        g, domain_id=domain_id, project_id=project_id, asset_listing_id=asset_listing_id
    )
    _print_json(creds, pretty=g.pretty)


@app.command("credential-process")
def credential_process_cmd(
    ctx: typer.Context,
    domain_id: str = typer.Argument(..., help="Domain id"),
    project_id: str = typer.Argument(..., help="Subscribing project id"),
    asset_listing_id: str = typer.Argument(..., help="Asset listing id"),
) -> None:
    """Print credentials in the AWS CLI credential_process format."""
    g = _ctx_global(ctx)
    creds = fetch_credentials(
        g, domain_id=domain_id, project_id=project_id, asset_listing_id=asset_listing_id
    )
    _print_json({"Version": 1, **creds}, pretty=False)


@app.command("env")
def env_cmd(
    ctx: typer.Context,
    domain_id: str = typer.Argument(..., help="Domain id"),
    project_id: str = typer.Argument(..., help="Subscribing project id"),
    asset_listing_id: str = typer.Argument(..., help="Asset listing id"),
) -> None:
    """Print shell export lines for the vended credentials."""
    g = _ctx_global(ctx)
    creds = fetch_credentials(
        g, domain_id=domain_id, project_id=project_id, asset_listing_id=asset_listing_id
    )
    lines = [
        f"export AWS_ACCESS_KEY_ID={shlex.quote(creds['AccessKeyId'])}",
        f"export AWS_SECRET_ACCESS_KEY={shlex.quote(creds['SecretAccessKey'])}",
        f"export AWS_SESSION_TOKEN={shlex.quote(creds['SessionToken'])}",
        f"export AWS_CREDENTIAL_EXPIRATION={shlex.quote(creds['Expiration'])}",
    ]
    sys.stdout.write("\n".join(lines) + "\n")


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="df-access", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
