from __future__ import annotations

import json
from typing import Any

from access_naming import credential_vendor_role_arn
from access_naming import hapr_role_arn
from access_naming import sapr_role_arn

POLICY_VERSION = "2012-10-17"
SPOKE_READ_ACTIONS = ["s3:GetObject"]


def _document(statements: list[dict[str, Any]]) -> dict[str, Any]:
    return {"Version": POLICY_VERSION, "Statement": statements}


def _trust(principal_arn: str) -> dict[str, Any]:
    return _document(
        [
            {
                "Effect": "Allow",
                "Principal": {"AWS": principal_arn},
                "Action": "sts:AssumeRole",
            }
        ]
    )


def hub_trust_policy(hub_account_id: str) -> dict[str, Any]:
    # Only the credential vendor's execution role may enter the hub role.
    return _trust(credential_vendor_role_arn(hub_account_id))


def spoke_trust_policy(hub_account_id: str, domain_id: str, project_id: str) -> dict[str, Any]:
    return _trust(hapr_role_arn(hub_account_id, domain_id, project_id))


def hub_grant_policy(spoke_account_id: str, domain_id: str, project_id: str) -> dict[str, Any]:
    return _document(
        [
            {
                "Effect": "Allow",
                "Action": "sts:AssumeRole",
                "Resource": [sapr_role_arn(spoke_account_id, domain_id, project_id)],
            }
        ]
    )


def spoke_grant_policy(resource_arn: str) -> dict[str, Any]:
    return _document(
        [
            {
                "Effect": "Allow",
                "Action": list(SPOKE_READ_ACTIONS),
                "Resource": [resource_arn],
            }
        ]
    )


def to_json(doc: dict[str, Any]) -> str:
    return json.dumps(doc, separators=(",", ":"), sort_keys=True)
