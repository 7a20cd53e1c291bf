import json

from botocore.exceptions import ClientError


HUB = "111111111111"
SPOKE = "999999999999"
VENDOR_ROLE_ARN = f"arn:aws:iam::{HUB}:role/DF-CredentialVendor"
L1_ARN = "arn:aws:s3:::spoke-data/sales/2026.csv"


class Catalog:
    """Just enough of the data catalog for subscription, membership and listing lookups."""

    def __init__(self):
        self.listings = {
            "L1": {"df_s3_asset_form": {"arn": L1_ARN, "accountId": SPOKE}},
            "L2": {"df_s3_asset_form": {"arn": "arn:aws:s3:::other/x.csv", "accountId": "222222222222"}},
        }
        self.members = {"P1": ["u-alice"], "P2": ["u-bob"]}
        self.subscriptions = []

    def get_listing(self, *, domainIdentifier, identifier):
        forms = self.listings.get(identifier)
        if forms is None:
            raise ClientError(
                {"Error": {"Code": "ResourceNotFoundException", "Message": "no listing"}}, "GetListing"
            )
        return {"item": {"assetListing": {"forms": json.dumps(forms)}}}

    def list_project_memberships(self, *, domainIdentifier, projectIdentifier, **_):
        users = self.members.get(projectIdentifier, [])
        return {"members": [{"memberDetails": {"user": {"userId": u}}} for u in users]}

    def list_subscriptions(self, *, domainIdentifier, owningProjectId, subscribedListingId, status):
        return {
            "items": [
                s
                for s in self.subscriptions
                if s["project"] == owningProjectId and s["subscribedListing"]["id"] == subscribedListingId
            ]
        }


class Directory:
    users = {"alice": "u-alice", "bob": "u-bob"}

    def get_user_id(self, *, IdentityStoreId, AlternateIdentifier):
        return {"UserId": self.users[AlternateIdentifier["UniqueAttribute"]["AttributeValue"]]}

    def is_member_in_groups(self, **_):
        return {"Results": []}


class Bus:
    def __init__(self):
        self.entries = []

    def put_events(self, *, Entries):
        self.entries.extend(Entries)
        return {"FailedEntryCount": 0, "Entries": [{"EventId": f"e-{len(self.entries)}"}]}

    def delivered(self):
        return [
            {
                "id": f"e-{i}",
                "source": e["Source"],
                "detail-type": e["DetailType"],
                "detail": json.loads(e["Detail"]),
            }
            for i, e in enumerate(self.entries, start=1)
        ]


class WorldSts:
    """STS that evaluates trust and identity policies against the fake IAM world."""

    def __init__(self, world, caller_arn, sessions=None):
        self.world = world
        self.caller_arn = caller_arn
        self.sessions = sessions if sessions is not None else []

    def _deny(self, why):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": why}}, "AssumeRole")

    def _caller_may_assume(self, target_arn):
        if self.caller_arn == VENDOR_ROLE_ARN:
            return True
        for doc in self.world.inline_policies_by_arn(self.caller_arn):
            for stmt in doc["Statement"]:
                if stmt["Effect"] == "Allow" and stmt["Action"] == "sts:AssumeRole":
                    if target_arn in stmt["Resource"]:
                        return True
        return False

    def _session_resources(self, role_arn, session_policy):
        # Effective access is the role's grants intersected with the session policy.
        granted = set()
        for doc in self.world.inline_policies_by_arn(role_arn):
            for stmt in doc["Statement"]:
                if stmt["Action"] == ["s3:GetObject"]:
                    granted.update(stmt["Resource"])
        if session_policy is None:
            return sorted(granted)
        allowed = set()
        for stmt in json.loads(session_policy)["Statement"]:
            allowed.update(stmt["Resource"])
        return sorted(granted & allowed)

    def assume_role(self, *, RoleArn, RoleSessionName, DurationSeconds, Policy=None):
        role = self.world.role_by_arn(RoleArn)
        if role is None:
            self._deny(f"{RoleArn} does not exist")
        principals = [s["Principal"]["AWS"] for s in role["AssumeRolePolicyDocument"]["Statement"]]
        if self.caller_arn not in principals:
            self._deny(f"{RoleArn} does not trust {self.caller_arn}")
        if not self._caller_may_assume(RoleArn):
            self._deny(f"{self.caller_arn} may not assume {RoleArn}")
        self.sessions.append({"role": RoleArn, "resources": self._session_resources(RoleArn, Policy)})
        return {
            "Credentials": {
                "AccessKeyId": "ASIA" + RoleArn.rsplit("/", 1)[-1].replace("-", ""),
                "SecretAccessKey": "secret",
                "SessionToken": f"session-for:{RoleArn}",
                "Expiration": "2026-10-19T12:15:00+00:00",
            }
        }


def _subscription_created(listing, project="P1", subscription="S1"):
    return {
        "id": f"raw-{subscription}",
        "source": "aws.datazone",
        "detail-type": "Subscription Created",
        "detail": {
            "metadata": {"domain": "D1", "awsAccountId": HUB},
            "data": {
                "status": "APPROVED",
                "subscribedListing": {"id": listing},
                "subscribedPrincipal": {"id": project, "type": "PROJECT"},
                "subscriptionRequestId": subscription,
            },
        },
    }


def _credentials_request(caller, project="P1", listing="L1"):
    return {
        "httpMethod": "POST",
        "pathParameters": {"domainId": "D1", "projectId": project, "assetListingId": listing},
        "requestContext": {"requestId": "req-1", "authorizer": {"claims": {"cognito:username": caller}}},
    }


def test_subscription_to_credentials(load_lambda, iam_world, monkeypatch):
    catalog = Catalog()
    bus = Bus()

    enrichment = load_lambda("subscription_enrichment")
    enrichment._datazone_client = catalog
    enrichment._events_client = bus

    # Catalog approves P1's subscription to L1.
    catalog.subscriptions.append(
        {"id": "S1", "status": "APPROVED", "project": "P1", "subscribedListing": {"id": "L1"}}
    )
    assert enrichment.handler(_subscription_created("L1"), None) == {"ok": True, "published": 1}

    provisioner = load_lambda("role_provisioner")
    for event in bus.delivered():
        provisioner._iam_client = iam_world.account(HUB)
        provisioner.hub_handler(event, None)
        provisioner._iam_client = iam_world.account(SPOKE)
        provisioner.spoke_handler(event, None)

    hapr = iam_world.role_by_arn(f"arn:aws:iam::{HUB}:role/DF-D1-P1-HAPR")
    sapr = iam_world.role_by_arn(f"arn:aws:iam::{SPOKE}:role/DF-D1-P1-SAPR")
    assert hapr is not None and sapr is not None
    spoke_policies = iam_world.account(SPOKE).policies("DF-D1-P1-SAPR")
    assert list(spoke_policies) == ["Subscription-Policy-S1"]
    assert spoke_policies["Subscription-Policy-S1"]["Statement"][0]["Resource"] == [L1_ARN]

    vendor = load_lambda("credentials_vendor", IDENTITY_STORE_ID="d-1", HUB_ACCOUNT_ID=HUB)
    vendor._datazone_client = catalog
    vendor._identitystore_client = Directory()
    vendor._sts_client = WorldSts(iam_world, VENDOR_ROLE_ARN)
    monkeypatch.setattr(
        vendor,
        "_sts_for_credentials",
        lambda creds: WorldSts(iam_world, creds["SessionToken"].split(":", 1)[1]),
    )

    granted = vendor.handler(_credentials_request("alice"), None)
    assert granted["statusCode"] == 201
    assert json.loads(granted["body"])["SessionToken"] == f"session-for:{sapr['Arn']}"

    # bob is not in P1.
    assert vendor.handler(_credentials_request("bob"), None)["statusCode"] == 403
    # P2 has no subscription to L1.
    assert vendor.handler(_credentials_request("bob", project="P2"), None)["statusCode"] == 403


def test_unprovisioned_spoke_cannot_be_reached(load_lambda, iam_world, monkeypatch):
    catalog = Catalog()
    # Approved in the catalog, but no enriched event was ever delivered.
    catalog.subscriptions.append(
        {"id": "S9", "status": "APPROVED", "project": "P1", "subscribedListing": {"id": "L2"}}
    )
    provisioner = load_lambda("role_provisioner")
    provisioner._iam_client = iam_world.account(HUB)
    provisioner.ensure_hub_role("D1", "P1", HUB)

    vendor = load_lambda("credentials_vendor", IDENTITY_STORE_ID="d-1", HUB_ACCOUNT_ID=HUB)
    vendor._datazone_client = catalog
    vendor._identitystore_client = Directory()
    vendor._sts_client = WorldSts(iam_world, VENDOR_ROLE_ARN)
    monkeypatch.setattr(
        vendor,
        "_sts_for_credentials",
        lambda creds: WorldSts(iam_world, creds["SessionToken"].split(":", 1)[1]),
    )

    resp = vendor.handler(_credentials_request("alice", listing="L2"), None)

    assert resp["statusCode"] == 403


def test_vended_session_reaches_only_the_requested_asset(load_lambda, iam_world, monkeypatch):
    other_arn = "arn:aws:s3:::spoke-data/hr/people.csv"
    catalog = Catalog()
    catalog.listings["L3"] = {"df_s3_asset_form": {"arn": other_arn, "accountId": SPOKE}}
    bus = Bus()
    enrichment = load_lambda("subscription_enrichment")
    enrichment._datazone_client = catalog
    enrichment._events_client = bus
    for listing, subscription in (("L1", "S1"), ("L3", "S3")):
        catalog.subscriptions.append(
            {"id": subscription, "status": "APPROVED", "project": "P1", "subscribedListing": {"id": listing}}
        )
        enrichment.handler(_subscription_created(listing, subscription=subscription), None)

    provisioner = load_lambda("role_provisioner")
    for event in bus.delivered():
        provisioner._iam_client = iam_world.account(HUB)
        provisioner.hub_handler(event, None)
        provisioner._iam_client = iam_world.account(SPOKE)
        provisioner.spoke_handler(event, None)
    assert sorted(iam_world.account(SPOKE).policies("DF-D1-P1-SAPR")) == [
        "Subscription-Policy-S1",
        "Subscription-Policy-S3",
    ]

    sessions = []
    vendor = load_lambda("credentials_vendor", IDENTITY_STORE_ID="d-1", HUB_ACCOUNT_ID=HUB)
    vendor._datazone_client = catalog
    vendor._identitystore_client = Directory()
    vendor._sts_client = WorldSts(iam_world, VENDOR_ROLE_ARN, sessions)
    monkeypatch.setattr(
        vendor,
        "_sts_for_credentials",
        lambda creds: WorldSts(iam_world, creds["SessionToken"].split(":", 1)[1], sessions),
    )

    resp = vendor.handler(_credentials_request("alice", listing="L1"), None)

    assert resp["statusCode"] == 201
    spoke_session = sessions[-1]
    assert spoke_session["role"] == f"arn:aws:iam::{SPOKE}:role/DF-D1-P1-SAPR"
    assert spoke_session["resources"] == [L1_ARN]
