from __future__ import annotations

from access_errors import ValidationError

# IAM hard limit on role names.
MAX_ROLE_NAME_LENGTH = 64

CREDENTIAL_VENDOR_ROLE_NAME = "DF-CredentialVendor"
HAPR_PERMISSIONS_BOUNDARY_NAME = "DF-HAPR-PermissionsBoundary"
SAPR_PERMISSIONS_BOUNDARY_NAME = "DF-SAPR-PermissionsBoundary"

DF_EVENT_BUS_NAME = "DF-Shared-Bus"

DATAZONE_EVENT_SOURCE = "aws.datazone"
DATAZONE_SUBSCRIPTION_CREATED = "Subscription Created"
ENRICHMENT_EVENT_SOURCE = "df.subscriptionEnrichment"
ENRICHED_SUBSCRIPTION_CREATED = "DF Enriched Subscription Created"


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def policy_arn(account_id: str, policy_name: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{policy_name}"


def _checked_role_name(name: str) -> str:
    # Truncating would let two projects collide on one role.
    if len(name) > MAX_ROLE_NAME_LENGTH:
        raise ValidationError(f"role name exceeds {MAX_ROLE_NAME_LENGTH} characters: {name}")
    return name


def credential_vendor_role_arn(account_id: str) -> str:
    return role_arn(account_id, CREDENTIAL_VENDOR_ROLE_NAME)


def hapr_role_name(domain_id: str, project_id: str) -> str:
    return _checked_role_name(f"DF-{domain_id}-{project_id}-HAPR")


def hapr_role_arn(account_id: str, domain_id: str, project_id: str) -> str:
    return role_arn(account_id, hapr_role_name(domain_id, project_id))


def hapr_role_policy_name(spoke_account_id: str) -> str:
    return f"Assume-Into-SAPR-{spoke_account_id}"


def hapr_permissions_boundary_arn(account_id: str) -> str:
    return policy_arn(account_id, HAPR_PERMISSIONS_BOUNDARY_NAME)


def sapr_role_name(domain_id: str, project_id: str) -> str:
    return _checked_role_name(f"DF-{domain_id}-{project_id}-SAPR")


def sapr_role_arn(account_id: str, domain_id: str, project_id: str) -> str:
    return role_arn(account_id, sapr_role_name(domain_id, project_id))


def sapr_role_policy_name(subscription_id: str) -> str:
    return f"Subscription-Policy-{subscription_id}"


def sapr_permissions_boundary_arn(account_id: str) -> str:
    return policy_arn(account_id, SAPR_PERMISSIONS_BOUNDARY_NAME)
