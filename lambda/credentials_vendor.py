from __future__ import annotations

import json
import os
import re
import time
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import ClientError

from access_errors import AssetNotAuthorized
from access_errors import AssetNotFound
from access_errors import DataIntegrityError
from access_errors import MisconfiguredError
from access_errors import UpstreamUnavailable
from access_errors import UserNotAuthorized
from access_errors import ValidationError
from access_models import Asset
from access_models import asset_from_forms
from access_naming import hapr_role_arn
from access_naming import sapr_role_arn
from access_policies import spoke_grant_policy
from access_policies import to_json

IDENTITY_STORE_ID = os.environ.get("IDENTITY_STORE_ID", "")
HUB_ACCOUNT_ID = os.environ.get("HUB_ACCOUNT_ID", "")
SESSION_DURATION_SECONDS = int(os.environ.get("SESSION_DURATION_SECONDS", "900"))
CALLER_ID_CLAIM = os.environ.get("CALLER_ID_CLAIM", "cognito:username")
SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")

# STS floor for DurationSeconds; vended sessions stay well under an hour.
MIN_SESSION_SECONDS = 900
MAX_SESSION_SECONDS = 1800
# IsMemberInGroups accepts at most 100 group ids per call.
MEMBER_IN_GROUPS_BATCH = 100
SUBSCRIPTION_STATUS_APPROVED = "APPROVED"

_sts_client = None
_datazone_client = None
_identitystore_client = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(dt: Any) -> str:
    if isinstance(dt, datetime):
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()
    return str(dt or "")


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _sts():
    global _sts_client
    if _sts_client is None:
        _sts_client = boto3.client("sts", region_name=_aws_region())
    return _sts_client


def _datazone():
    global _datazone_client
    if _datazone_client is None:
        _datazone_client = boto3.client("datazone", region_name=_aws_region())
    return _datazone_client


def _identitystore():
    global _identitystore_client
    if _identitystore_client is None:
        _identitystore_client = boto3.client("identitystore", region_name=_aws_region())
    return _identitystore_client


def _sts_for_credentials(credentials: dict[str, Any]):
    return boto3.client(
        "sts",
        region_name=_aws_region(),
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
    )


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json", "cache-control": "no-store"},
        "body": json.dumps(body),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(status_code, {"errorCode": code, "message": message, "requestId": request_id})


def _duration_seconds() -> int:
    return min(max(SESSION_DURATION_SECONDS, MIN_SESSION_SECONDS), MAX_SESSION_SECONDS)


def _session_name(prefix: str, caller_user_id: str) -> str:
    # RoleSessionName allows at most 64 chars from [\w+=,.@-].
    sanitized = re.sub(r"[^a-zA-Z0-9+=,.@_-]", "", f"{prefix}-{caller_user_id}")
    return sanitized[:64] or prefix


def resolve_identity_store_user_id(caller_user_id: str) -> str:
    if not caller_user_id:
        raise UserNotAuthorized("missing caller identity")
    try:
        out = _identitystore().get_user_id(
            IdentityStoreId=IDENTITY_STORE_ID,
            AlternateIdentifier={
                "UniqueAttribute": {
                    "AttributePath": "userName",
                    "AttributeValue": caller_user_id,
                }
            },
        )
    except ClientError as e:
        if _error_code(e) == "ResourceNotFoundException":
            raise UserNotAuthorized("User not found") from e
        raise UpstreamUnavailable(f"identitystore get_user_id failed: {e}") from e
    user_id = str(out.get("UserId") or "").strip()
    if not user_id:
        raise UserNotAuthorized("User not found")
    return user_id


def _project_members(domain_id: str, project_id: str) -> tuple[set[str], list[str]]:
    user_ids: set[str] = set()
    group_ids: list[str] = []
    kwargs: dict[str, Any] = {"domainIdentifier": domain_id, "projectIdentifier": project_id}
    while True:
        try:
            out = _datazone().list_project_memberships(**kwargs)
        except ClientError as e:
            raise UpstreamUnavailable(f"datazone list_project_memberships failed: {e}") from e
        for member in out.get("members") or []:
            details = member.get("memberDetails") or {}
            user_id = str((details.get("user") or {}).get("userId") or "").strip()
            group_id = str((details.get("group") or {}).get("groupId") or "").strip()
            if user_id:
                user_ids.add(user_id)
            if group_id and group_id not in group_ids:
                group_ids.append(group_id)
        next_token = str(out.get("nextToken") or "").strip()
        if not next_token:
            return user_ids, group_ids
        kwargs["nextToken"] = next_token


def _user_in_any_group(user_id: str, group_ids: list[str]) -> bool:
    for i in range(0, len(group_ids), MEMBER_IN_GROUPS_BATCH):
        try:
            out = _identitystore().is_member_in_groups(
                IdentityStoreId=IDENTITY_STORE_ID,
                MemberId={"UserId": user_id},
                GroupIds=group_ids[i : i + MEMBER_IN_GROUPS_BATCH],
            )
        except ClientError as e:
            raise UpstreamUnavailable(f"identitystore is_member_in_groups failed: {e}") from e
        if any(bool(r.get("MembershipExists")) for r in out.get("Results") or []):
            return True
    return False


def is_user_in_project(caller_user_id: str, domain_id: str, project_id: str) -> bool:
    user_id = resolve_identity_store_user_id(caller_user_id)
    member_user_ids, group_ids = _project_members(domain_id, project_id)
    if user_id in member_user_ids:
        return True
    if not group_ids:
        return False
    return _user_in_any_group(user_id, group_ids)


def is_asset_in_project(domain_id: str, project_id: str, asset_listing_id: str) -> bool:
    try:
        out = _datazone().list_subscriptions(
            domainIdentifier=domain_id,
            owningProjectId=project_id,
            subscribedListingId=asset_listing_id,
            status=SUBSCRIPTION_STATUS_APPROVED,
        )
    except ClientError as e:
        raise UpstreamUnavailable(f"datazone list_subscriptions failed: {e}") from e
    for item in out.get("items") or []:
        listing = item.get("subscribedListing") or {}
        if (
            str(item.get("status") or "") == SUBSCRIPTION_STATUS_APPROVED
            and str(listing.get("id") or "") == asset_listing_id
        ):
            return True
    return False


def resolve_asset(domain_id: str, asset_listing_id: str) -> Asset:
    try:
        out = _datazone().get_listing(domainIdentifier=domain_id, identifier=asset_listing_id)
    except ClientError as e:
        if _error_code(e) == "ResourceNotFoundException":
            raise AssetNotFound(f"asset listing {asset_listing_id} not found") from e
        raise UpstreamUnavailable(f"datazone get_listing failed: {e}") from e
    listing = (out.get("item") or {}).get("assetListing") or {}
    try:
        return asset_from_forms(listing.get("forms"))
    except (ValidationError, DataIntegrityError) as e:
        raise AssetNotAuthorized(f"asset listing {asset_listing_id} is not vendable: {e}") from e


def _hub_account_id() -> str:
    configured = (HUB_ACCOUNT_ID or "").strip()
    if configured:
        return configured
    try:
        return str(_sts().get_caller_identity()["Account"])
    except ClientError as e:
        raise UpstreamUnavailable(f"sts get_caller_identity failed: {e}") from e


def generate_credentials_for_asset(
    caller_user_id: str, domain_id: str, project_id: str, asset: Asset
) -> dict[str, str]:
    hub_account_id = _hub_account_id()
    duration = _duration_seconds()
    try:
        hub_session = _sts().assume_role(
            RoleArn=hapr_role_arn(hub_account_id, domain_id, project_id),
            RoleSessionName=_session_name("hapr", caller_user_id),
            DurationSeconds=duration,
        )
        # Hub credentials only ever feed the second hop.
        spoke_session = _sts_for_credentials(hub_session["Credentials"]).assume_role(
            RoleArn=sapr_role_arn(asset.owner_account_id, domain_id, project_id),
            RoleSessionName=_session_name("sapr", caller_user_id),
            DurationSeconds=duration,
            # Narrow the session to this asset; the role may hold other subscriptions.
            Policy=to_json(spoke_grant_policy(asset.resource_arn)),
        )
    except ClientError as e:
        if _error_code(e) == "AccessDenied":
            raise AssetNotAuthorized(
                "Unable to grant credentials for requested asset. "
                f"Ensure project {project_id} is subscribed to the asset."
            ) from e
        raise UpstreamUnavailable(f"sts assume_role failed: {e}") from e

    creds = spoke_session["Credentials"]
    return {
        "AccessKeyId": creds["AccessKeyId"],
        "SecretAccessKey": creds["SecretAccessKey"],
        "SessionToken": creds["SessionToken"],
        "Expiration": _iso(creds.get("Expiration")),
    }


def vend(
    caller_user_id: str, domain_id: str, project_id: str, asset_listing_id: str
) -> dict[str, str]:
    if not (IDENTITY_STORE_ID or "").strip():
        raise MisconfiguredError("IDENTITY_STORE_ID is required")
    if not is_user_in_project(caller_user_id, domain_id, project_id):
        raise AssetNotAuthorized("User not in project")
    if not is_asset_in_project(domain_id, project_id, asset_listing_id):
        raise AssetNotAuthorized("Asset not in project")
    asset = resolve_asset(domain_id, asset_listing_id)
    return generate_credentials_for_asset(caller_user_id, domain_id, project_id, asset)


def _request_context(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext")
    return rc if isinstance(rc, dict) else {}


def _caller_claim(event: dict[str, Any], claim: str) -> str:
    authorizer = _request_context(event).get("authorizer")
    if not isinstance(authorizer, dict):
        return ""
    claims = authorizer.get("claims")
    # HTTP API JWT authorizers nest the claims one level deeper.
    jwt = authorizer.get("jwt")
    if claims is None and isinstance(jwt, dict):
        claims = jwt.get("claims")
    if not isinstance(claims, dict):
        return ""
    return str(claims.get(claim) or "").strip()


def _route_params(event: dict[str, Any]) -> dict[str, str] | None:
    params = event.get("pathParameters") or {}
    if isinstance(params, dict):
        out = {k: str(params.get(k) or "").strip() for k in ("domainId", "projectId", "assetListingId")}
        if all(out.values()):
            return out

    # .../domains/{domainId}/projects/{projectId}/assets/{assetListingId}/credentials
    path = str(event.get("path") or event.get("rawPath") or "")
    segments = [s for s in path.split("/") if s]
    if len(segments) < 7:
        return None
    tail = segments[-7:]
    if tail[0] != "domains" or tail[2] != "projects" or tail[4] != "assets" or tail[6] != "credentials":
        return None
    return {"domainId": tail[1], "projectId": tail[3], "assetListingId": tail[5]}


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = str(_request_context(event).get("requestId") or "")
    wide_event: dict[str, Any] = {
        "event": "df_access_vend_credentials",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
    }
    status_code = 500
    try:
        http = _request_context(event).get("http")
        v2_method = http.get("method") if isinstance(http, dict) else None
        method = str(event.get("httpMethod") or v2_method or "POST").upper()
        params = _route_params(event)
        if method != "POST" or params is None:
            status_code = 404
            wide_event["outcome"] = "route_not_found"
            return _error(404, "NOT_FOUND", "route not found", request_id)

        wide_event["domain_id"] = params["domainId"]
        wide_event["project_id"] = params["projectId"]
        wide_event["asset_listing_id"] = params["assetListingId"]
        caller_user_id = _caller_claim(event, CALLER_ID_CLAIM)
        wide_event["caller"] = caller_user_id

        denied_message = (
            "Not authorized for this asset. Ensure project "
            f"{params['projectId']} is subscribed to asset listing {params['assetListingId']}."
        )
        try:
            credentials = vend(
                caller_user_id,
                params["domainId"],
                params["projectId"],
                params["assetListingId"],
            )
        except (UserNotAuthorized, AssetNotAuthorized) as e:
            # The reason stays in the log; callers only learn they were denied.
            status_code = 403
            wide_event["outcome"] = "denied"
            wide_event["denial"] = {"type": type(e).__name__, "message": str(e)}
            return _error(403, "NOT_AUTHORIZED", denied_message, request_id)
        except AssetNotFound as e:
            status_code = 404
            wide_event["outcome"] = "asset_not_found"
            wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
            return _error(404, "NOT_FOUND", "Asset not found", request_id)
        except MisconfiguredError as e:
            status_code = 500
            wide_event["outcome"] = "misconfigured"
            wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
            return _error(500, "MISCONFIGURED", "Server misconfigured", request_id)
        except UpstreamUnavailable as e:
            status_code = 502
            wide_event["outcome"] = "upstream_unavailable"
            wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
            return _error(502, "UPSTREAM_UNAVAILABLE", "Failed to issue scoped credentials", request_id)

        status_code = 201
        wide_event["outcome"] = "success"
        wide_event["expiration"] = credentials["Expiration"]
        return _response(201, credentials)
    except Exception as exc:
        status_code = 500
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _error(500, "INTERNAL_ERROR", "Failed to issue scoped credentials", request_id)
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        # Never log credential material.
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
