from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import ClientError

from access_errors import DataIntegrityError
from access_errors import UpstreamUnavailable
from access_errors import ValidationError
from access_models import Asset
from access_models import EnrichedSubscriptionFact
from access_models import asset_from_forms
from access_naming import DATAZONE_EVENT_SOURCE
from access_naming import DATAZONE_SUBSCRIPTION_CREATED
from access_naming import DF_EVENT_BUS_NAME
from access_naming import ENRICHED_SUBSCRIPTION_CREATED
from access_naming import ENRICHMENT_EVENT_SOURCE

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
EVENT_BUS_NAME = os.environ.get("EVENT_BUS_NAME", DF_EVENT_BUS_NAME)

STATUS_APPROVED = "APPROVED"
PRINCIPAL_TYPE_PROJECT = "PROJECT"

_datazone_client = None
_events_client = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _datazone():
    global _datazone_client
    if _datazone_client is None:
        _datazone_client = boto3.client("datazone", region_name=_aws_region())
    return _datazone_client


def _events():
    global _events_client
    if _events_client is None:
        _events_client = boto3.client("events", region_name=_aws_region())
    return _events_client


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _obj(parent: dict[str, Any], key: str) -> dict[str, Any]:
    val = parent.get(key)
    return val if isinstance(val, dict) else {}


def _str(parent: dict[str, Any], key: str) -> str:
    return str(parent.get(key) or "").strip()


def get_asset_for_listing(domain_id: str, listing_id: str) -> Asset:
    try:
        out = _datazone().get_listing(domainIdentifier=domain_id, identifier=listing_id)
    except ClientError as e:
        if _error_code(e) == "ResourceNotFoundException":
            raise DataIntegrityError(
                f"listing {listing_id} not found in domain {domain_id}"
            ) from e
        raise UpstreamUnavailable(
            f"get_listing failed for domainId: {domain_id} and listingId: {listing_id}: {e}"
        ) from e
    item = _obj(out, "item")
    listing = _obj(item, "assetListing")
    return asset_from_forms(listing.get("forms"))


def enrich(detail: dict[str, Any]) -> EnrichedSubscriptionFact:
    metadata = _obj(detail, "metadata")
    data = _obj(detail, "data")
    principal = _obj(data, "subscribedPrincipal")

    if _str(principal, "type") != PRINCIPAL_TYPE_PROJECT:
        raise ValidationError("Expected to find a project subscriber.")

    domain_id = _str(metadata, "domain")
    hub_account_id = _str(metadata, "awsAccountId")
    project_id = _str(principal, "id")
    subscription_id = _str(data, "subscriptionRequestId")
    listing_id = _str(_obj(data, "subscribedListing"), "id")
    required = {
        "metadata.domain": domain_id,
        "metadata.awsAccountId": hub_account_id,
        "data.subscribedPrincipal.id": project_id,
        "data.subscriptionRequestId": subscription_id,
        "data.subscribedListing.id": listing_id,
    }
    missing = sorted(k for k, v in required.items() if not v)
    if missing:
        raise ValidationError(f"subscription event is missing: {', '.join(missing)}")

    asset = get_asset_for_listing(domain_id, listing_id)
    return EnrichedSubscriptionFact(
        domain_id=domain_id,
        hub_account_id=hub_account_id,
        spoke_account_id=asset.owner_account_id,
        subscribed_project_id=project_id,
        subscription_id=subscription_id,
        subscribed_listing_id=listing_id,
        asset=asset,
    )


def enriched_event_entry(detail: dict[str, Any], fact: EnrichedSubscriptionFact) -> dict[str, Any]:
    enriched = dict(detail)
    enriched["dfData"] = fact.to_df_data()
    return {
        "Time": datetime.now(timezone.utc),
        "Source": ENRICHMENT_EVENT_SOURCE,
        "DetailType": ENRICHED_SUBSCRIPTION_CREATED,
        "Detail": json.dumps(enriched, separators=(",", ":"), sort_keys=True),
        "EventBusName": EVENT_BUS_NAME,
    }


def publish(entry: dict[str, Any]) -> None:
    try:
        out = _events().put_events(Entries=[entry])
    except ClientError as e:
        raise UpstreamUnavailable(f"put_events failed: {e}") from e
    # PutEvents reports per-entry failures in the response rather than raising.
    if int(out.get("FailedEntryCount") or 0) > 0:
        entries = out.get("Entries") or [{}]
        first = entries[0] if isinstance(entries[0], dict) else {}
        raise UpstreamUnavailable(
            "put_events rejected the enriched subscription: "
            f"{first.get('ErrorCode', '')} {first.get('ErrorMessage', '')}".strip()
        )


def process_subscription_approved(detail: dict[str, Any]) -> EnrichedSubscriptionFact | None:
    """
    Enrich one catalog subscription fact and publish it to the shared bus.

    Returns None (and publishes nothing) for subscriptions that are not approved.
    Validation and data-integrity failures are raised before anything is published.
    """

    data = _obj(detail, "data")
    if _str(data, "status") != STATUS_APPROVED:
        return None
    fact = enrich(detail)
    publish(enriched_event_entry(detail, fact))
    return fact


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": "df_access_enrich_subscription",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "event_id": event.get("id", ""),
    }
    try:
        source = str(event.get("source") or "")
        detail_type = str(event.get("detail-type") or "")
        if source != DATAZONE_EVENT_SOURCE or detail_type != DATAZONE_SUBSCRIPTION_CREATED:
            wide_event["outcome"] = "unhandled_event"
            wide_event["source"] = source
            wide_event["detail_type"] = detail_type
            return {"ok": False, "error": "unhandled_event"}

        detail = event.get("detail")
        if not isinstance(detail, dict):
            raise ValidationError("event detail must be an object")
        fact = process_subscription_approved(detail)
        if fact is None:
            wide_event["outcome"] = "ignored_status"
            wide_event["status"] = _str(_obj(detail, "data"), "status")
            return {"ok": True, "published": 0}

        wide_event["domain_id"] = fact.domain_id
        wide_event["project_id"] = fact.subscribed_project_id
        wide_event["subscription_id"] = fact.subscription_id
        wide_event["spoke_account_id"] = fact.spoke_account_id
        wide_event["outcome"] = "success"
        return {"ok": True, "published": 1}
    except Exception as exc:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
