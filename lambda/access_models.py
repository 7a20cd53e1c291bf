from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from access_errors import DataIntegrityError, UnsupportedAssetError, ValidationError

S3_ASSET_KIND = "S3"
S3_ASSET_FORM_NAME = "df_s3_asset_form"


@dataclass(frozen=True)
class ObjectStorageAsset:
    resource_arn: str
    owner_account_id: str
    kind: str = S3_ASSET_KIND


# Closed set of asset variants; extend together with asset_from_forms / asset_from_detail.
Asset = Union[ObjectStorageAsset]


@dataclass(frozen=True)
class EnrichedSubscriptionFact:
    domain_id: str
    hub_account_id: str
    spoke_account_id: str
    subscribed_project_id: str
    subscription_id: str
    subscribed_listing_id: str
    # None when parsed for the hub side, which never needs the asset.
    asset: Optional[Asset]

    @property
    def resource_arn(self) -> str:
        if self.asset is None:
            raise ValidationError("enriched subscription carries no asset")
        return self.asset.resource_arn

    def to_df_data(self) -> dict[str, Any]:
        return {
            "assetDetail": asset_detail(self.asset),
            "domainId": self.domain_id,
            "hubAccountId": self.hub_account_id,
            "spokeAccountId": self.spoke_account_id,
            "subscribedProjectId": self.subscribed_project_id,
            "subscribedListingId": self.subscribed_listing_id,
            "subscriptionId": self.subscription_id,
        }


def _str_field(obj: dict[str, Any], key: str) -> str:
    val = obj.get(key)
    if val is None:
        return ""
    return str(val).strip()


def asset_detail(asset: Asset) -> dict[str, str]:
    if isinstance(asset, ObjectStorageAsset):
        return {"type": asset.kind, "assetArn": asset.resource_arn}
    raise UnsupportedAssetError(f"unsupported asset variant: {type(asset).__name__}")


def asset_from_forms(raw_forms: Any) -> Asset:
    """
    Resolve the physical location of a listed asset from its metadata forms.

    DataZone returns the listing's forms as a JSON string keyed by form name.
    Only the object-storage form is recognized; a listing without it is not
    eligible for cross-account vending.
    """

    forms = raw_forms
    if isinstance(raw_forms, str):
        try:
            forms = json.loads(raw_forms)
        except Exception as e:
            raise DataIntegrityError(f"asset listing forms are not valid JSON: {e}") from e
    if not isinstance(forms, dict):
        raise DataIntegrityError("asset listing forms must be a JSON object")

    form = forms.get(S3_ASSET_FORM_NAME)
    if form is None:
        raise UnsupportedAssetError(
            f"asset listing has no {S3_ASSET_FORM_NAME}; only S3 assets are supported"
        )
    if not isinstance(form, dict):
        raise DataIntegrityError(f"{S3_ASSET_FORM_NAME} must be a JSON object")
    arn = _str_field(form, "arn")
    if not arn:
        raise DataIntegrityError("Expected to find DF metadata form with an arn.")
    account_id = _str_field(form, "accountId")
    if not account_id:
        raise DataIntegrityError("Expected to find DF metadata form with an accountId.")
    return ObjectStorageAsset(resource_arn=arn, owner_account_id=account_id)


def asset_from_detail(raw: Any, *, owner_account_id: str) -> Asset:
    if not isinstance(raw, dict):
        raise ValidationError("assetDetail must be an object")
    kind = _str_field(raw, "type")
    if kind == S3_ASSET_KIND:
        arn = _str_field(raw, "assetArn")
        if not arn:
            raise ValidationError("assetDetail.assetArn is required")
        return ObjectStorageAsset(resource_arn=arn, owner_account_id=owner_account_id)
    raise UnsupportedAssetError(f"Only S3 assets are supported (got {kind or 'none'!r})")


def fact_from_detail(detail: Any, *, with_asset: bool = True) -> EnrichedSubscriptionFact:
    if not isinstance(detail, dict):
        raise ValidationError("event detail must be an object")
    df_data = detail.get("dfData")
    if not isinstance(df_data, dict):
        raise ValidationError("event detail is missing dfData")
    metadata = detail.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    domain_id = _str_field(df_data, "domainId") or _str_field(metadata, "domain")
    values = {
        "domainId": domain_id,
        "hubAccountId": _str_field(df_data, "hubAccountId"),
        "spokeAccountId": _str_field(df_data, "spokeAccountId"),
        "subscribedProjectId": _str_field(df_data, "subscribedProjectId"),
        "subscriptionId": _str_field(df_data, "subscriptionId"),
    }
    missing = sorted(k for k, v in values.items() if not v)
    if missing:
        raise ValidationError(f"enriched subscription is missing: {', '.join(missing)}")

    asset = None
    if with_asset:
        asset = asset_from_detail(df_data.get("assetDetail"), owner_account_id=values["spokeAccountId"])
    return EnrichedSubscriptionFact(
        domain_id=values["domainId"],
        hub_account_id=values["hubAccountId"],
        spoke_account_id=values["spokeAccountId"],
        subscribed_project_id=values["subscribedProjectId"],
        subscription_id=values["subscriptionId"],
        subscribed_listing_id=_str_field(df_data, "subscribedListingId"),
        asset=asset,
    )
