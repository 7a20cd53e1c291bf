from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import ClientError

from access_errors import PermissionsBoundaryError
from access_models import EnrichedSubscriptionFact
from access_models import fact_from_detail
from access_naming import ENRICHED_SUBSCRIPTION_CREATED
from access_naming import ENRICHMENT_EVENT_SOURCE
from access_naming import hapr_permissions_boundary_arn
from access_naming import hapr_role_name
from access_naming import hapr_role_policy_name
from access_naming import sapr_permissions_boundary_arn
from access_naming import sapr_role_name
from access_naming import sapr_role_policy_name
from access_policies import hub_grant_policy
from access_policies import hub_trust_policy
from access_policies import spoke_grant_policy
from access_policies import spoke_trust_policy
from access_policies import to_json

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
# Account this instance runs in; facts for other accounts are skipped when set.
ACCOUNT_ID = os.environ.get("ACCOUNT_ID", "")
HUB_PERMISSIONS_BOUNDARY_ARN = os.environ.get("HUB_PERMISSIONS_BOUNDARY_ARN", "")
SPOKE_PERMISSIONS_BOUNDARY_ARN = os.environ.get("SPOKE_PERMISSIONS_BOUNDARY_ARN", "")
ROLE_MAX_SESSION_SECONDS = 3600

OUTCOME_CREATED = "created"
OUTCOME_EXISTS = "exists"

_iam_client = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iam():
    global _iam_client
    if _iam_client is None:
        # IAM is global; no region pinning.
        _iam_client = boto3.client("iam")
    return _iam_client


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _hub_boundary_arn(hub_account_id: str) -> str:
    return (HUB_PERMISSIONS_BOUNDARY_ARN or "").strip() or hapr_permissions_boundary_arn(hub_account_id)


def _spoke_boundary_arn(spoke_account_id: str) -> str:
    return (SPOKE_PERMISSIONS_BOUNDARY_ARN or "").strip() or sapr_permissions_boundary_arn(
        spoke_account_id
    )


def _get_role(role_name: str) -> dict[str, Any] | None:
    try:
        out = _iam().get_role(RoleName=role_name)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return None
        raise
    return out.get("Role") or {}


def _attached_boundary_arn(role: dict[str, Any]) -> str:
    boundary = role.get("PermissionsBoundary") or {}
    if not isinstance(boundary, dict):
        return ""
    return str(boundary.get("PermissionsBoundaryArn") or "").strip()


def _check_boundary(role_name: str, role: dict[str, Any], boundary_arn: str) -> None:
    attached = _attached_boundary_arn(role)
    if attached != boundary_arn:
        raise PermissionsBoundaryError(
            f"role {role_name} has permissions boundary {attached or 'none'!r}, expected {boundary_arn!r}"
        )


def _ensure_role(
    *,
    role_name: str,
    trust_policy: dict[str, Any],
    boundary_arn: str,
    description: str,
    tags: dict[str, str],
) -> str:
    existing = _get_role(role_name)
    if existing is not None:
        _check_boundary(role_name, existing, boundary_arn)
        return OUTCOME_EXISTS

    try:
        # The boundary is part of CreateRole so the role never exists unbounded.
        _iam().create_role(
            RoleName=role_name,
            AssumeRolePolicyDocument=to_json(trust_policy),
            PermissionsBoundary=boundary_arn,
            Description=description,
            MaxSessionDuration=ROLE_MAX_SESSION_SECONDS,
            Tags=[{"Key": k, "Value": v} for k, v in sorted(tags.items())],
        )
    except ClientError as e:
        # A concurrent delivery of the same fact won the race.
        if _error_code(e) != "EntityAlreadyExists":
            raise
        winner = _get_role(role_name)
        if winner is None:
            raise
        _check_boundary(role_name, winner, boundary_arn)
        return OUTCOME_EXISTS
    return OUTCOME_CREATED


def _inline_policy_exists(role_name: str, policy_name: str) -> bool:
    try:
        _iam().get_role_policy(RoleName=role_name, PolicyName=policy_name)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return False
        raise
    return True


def _ensure_inline_policy(*, role_name: str, policy_name: str, document: dict[str, Any]) -> str:
    if _inline_policy_exists(role_name, policy_name):
        return OUTCOME_EXISTS
    _iam().put_role_policy(
        RoleName=role_name,
        PolicyName=policy_name,
        PolicyDocument=to_json(document),
    )
    return OUTCOME_CREATED


def ensure_hub_role(domain_id: str, project_id: str, hub_account_id: str) -> str:
    return _ensure_role(
        role_name=hapr_role_name(domain_id, project_id),
        trust_policy=hub_trust_policy(hub_account_id),
        boundary_arn=_hub_boundary_arn(hub_account_id),
        description=f"Hub access role for project {project_id} in domain {domain_id}",
        tags={"df:domainId": domain_id, "df:projectId": project_id},
    )


def ensure_hub_grant(domain_id: str, project_id: str, spoke_account_id: str) -> str:
    return _ensure_inline_policy(
        role_name=hapr_role_name(domain_id, project_id),
        policy_name=hapr_role_policy_name(spoke_account_id),
        document=hub_grant_policy(spoke_account_id, domain_id, project_id),
    )


def ensure_spoke_role(
    domain_id: str, project_id: str, spoke_account_id: str, hub_account_id: str
) -> str:
    return _ensure_role(
        role_name=sapr_role_name(domain_id, project_id),
        trust_policy=spoke_trust_policy(hub_account_id, domain_id, project_id),
        boundary_arn=_spoke_boundary_arn(spoke_account_id),
        description=f"Spoke access role for project {project_id} in domain {domain_id}",
        tags={"df:domainId": domain_id, "df:projectId": project_id},
    )


def ensure_spoke_grant(
    domain_id: str, project_id: str, subscription_id: str, resource_arn: str
) -> str:
    return _ensure_inline_policy(
        role_name=sapr_role_name(domain_id, project_id),
        policy_name=sapr_role_policy_name(subscription_id),
        document=spoke_grant_policy(resource_arn),
    )


def provision_hub(fact: EnrichedSubscriptionFact) -> dict[str, str]:
    role = ensure_hub_role(fact.domain_id, fact.subscribed_project_id, fact.hub_account_id)
    grant = ensure_hub_grant(fact.domain_id, fact.subscribed_project_id, fact.spoke_account_id)
    return {"role": role, "grant": grant}


def provision_spoke(fact: EnrichedSubscriptionFact) -> dict[str, str]:
    role = ensure_spoke_role(
        fact.domain_id,
        fact.subscribed_project_id,
        fact.spoke_account_id,
        fact.hub_account_id,
    )
    grant = ensure_spoke_grant(
        fact.domain_id,
        fact.subscribed_project_id,
        fact.subscription_id,
        fact.resource_arn,
    )
    return {"role": role, "grant": grant}


def _is_enriched_subscription(event: dict[str, Any]) -> bool:
    return (
        str(event.get("source") or "") == ENRICHMENT_EVENT_SOURCE
        and str(event.get("detail-type") or "") == ENRICHED_SUBSCRIPTION_CREATED
    )


def _handle(event: dict[str, Any], *, side: str) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": f"df_access_provision_{side}_role",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "event_id": event.get("id", ""),
    }
    try:
        if not _is_enriched_subscription(event):
            wide_event["outcome"] = "unhandled_event"
            wide_event["source"] = event.get("source", "")
            wide_event["detail_type"] = event.get("detail-type", "")
            return {"ok": False, "error": "unhandled_event"}

        # The hub grant only names the spoke role, so the asset kind is a spoke concern.
        fact = fact_from_detail(event.get("detail"), with_asset=(side == "spoke"))
        wide_event["domain_id"] = fact.domain_id
        wide_event["project_id"] = fact.subscribed_project_id
        wide_event["subscription_id"] = fact.subscription_id
        wide_event["hub_account_id"] = fact.hub_account_id
        wide_event["spoke_account_id"] = fact.spoke_account_id

        target_account = fact.hub_account_id if side == "hub" else fact.spoke_account_id
        own_account = (ACCOUNT_ID or "").strip()
        if own_account and own_account != target_account:
            wide_event["outcome"] = "ignored_foreign_account"
            return {"ok": False, "error": "ignored_foreign_account"}

        result = provision_hub(fact) if side == "hub" else provision_spoke(fact)
        wide_event["role"] = result["role"]
        wide_event["grant"] = result["grant"]
        wide_event["outcome"] = "success"
        return {"ok": True, **result}
    except Exception as exc:
        # Re-raised so the event source redelivers per its own retry policy.
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))


def hub_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return _handle(event, side="hub")


def spoke_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return _handle(event, side="spoke")
