import importlib
import json
import sys
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError


LAMBDA_DIR = str(Path(__file__).resolve().parents[1] / "lambda")


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{operation}: {code}"}}, operation)


class FakeIam:
    """In-memory IAM for one account: roles, boundaries and inline policies."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        self.roles: dict[str, dict[str, Any]] = {}
        self.inline: dict[str, dict[str, str]] = {}
        self.calls: list[str] = []
        self.errors: dict[str, str] = {}

    def _maybe_fail(self, op: str, operation: str) -> None:
        code = self.errors.get(op)
        if code:
            raise _client_error(code, operation)

    def get_role(self, *, RoleName):
        self.calls.append("get_role")
        self._maybe_fail("get_role", "GetRole")
        role = self.roles.get(RoleName)
        if role is None:
            raise _client_error("NoSuchEntity", "GetRole")
        return {"Role": role}

    def create_role(self, **kwargs):
        self.calls.append("create_role")
        self._maybe_fail("create_role", "CreateRole")
        name = kwargs["RoleName"]
        if name in self.roles:
            raise _client_error("EntityAlreadyExists", "CreateRole")
        role = {
            "RoleName": name,
            "Arn": f"arn:aws:iam::{self.account_id}:role/{name}",
            "AssumeRolePolicyDocument": json.loads(kwargs["AssumeRolePolicyDocument"]),
            "MaxSessionDuration": kwargs.get("MaxSessionDuration"),
            "Tags": kwargs.get("Tags", []),
        }
        if kwargs.get("PermissionsBoundary"):
            role["PermissionsBoundary"] = {
                "PermissionsBoundaryType": "Policy",
                "PermissionsBoundaryArn": kwargs["PermissionsBoundary"],
            }
        self.roles[name] = role
        self.inline.setdefault(name, {})
        return {"Role": role}

    def get_role_policy(self, *, RoleName, PolicyName):
        self.calls.append("get_role_policy")
        self._maybe_fail("get_role_policy", "GetRolePolicy")
        doc = self.inline.get(RoleName, {}).get(PolicyName)
        if RoleName not in self.roles or doc is None:
            raise _client_error("NoSuchEntity", "GetRolePolicy")
        return {"RoleName": RoleName, "PolicyName": PolicyName, "PolicyDocument": json.loads(doc)}

    def put_role_policy(self, *, RoleName, PolicyName, PolicyDocument):
        self.calls.append("put_role_policy")
        self._maybe_fail("put_role_policy", "PutRolePolicy")
        if RoleName not in self.roles:
            raise _client_error("NoSuchEntity", "PutRolePolicy")
        self.inline[RoleName][PolicyName] = PolicyDocument
        return {}

    def policies(self, role_name: str) -> dict[str, dict[str, Any]]:
        return {k: json.loads(v) for k, v in self.inline.get(role_name, {}).items()}

    def snapshot(self) -> dict[str, Any]:
        return json.loads(json.dumps({"roles": self.roles, "inline": self.inline}, sort_keys=True))


class IamWorld:
    """IAM state across hub and spoke accounts, keyed by account id."""

    def __init__(self):
        self.accounts: dict[str, FakeIam] = {}

    def account(self, account_id: str) -> FakeIam:
        if account_id not in self.accounts:
            self.accounts[account_id] = FakeIam(account_id)
        return self.accounts[account_id]

    def role_by_arn(self, arn: str) -> dict[str, Any] | None:
        # arn:aws:iam::<account>:role/<name>
        parts = arn.split(":")
        if len(parts) < 6 or not parts[5].startswith("role/"):
            return None
        iam = self.accounts.get(parts[4])
        if iam is None:
            return None
        return iam.roles.get(parts[5][len("role/") :])

    def inline_policies_by_arn(self, arn: str) -> list[dict[str, Any]]:
        parts = arn.split(":")
        iam = self.accounts.get(parts[4])
        if iam is None:
            return []
        return list(iam.policies(parts[5][len("role/") :]).values())


@pytest.fixture
def client_error():
    return _client_error


@pytest.fixture
def iam_world() -> IamWorld:
    return IamWorld()


@pytest.fixture
def load_lambda(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-east-1")

    def _load(name: str, **env: str):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        if LAMBDA_DIR not in sys.path:
            sys.path.insert(0, LAMBDA_DIR)
        module = importlib.import_module(name)
        return importlib.reload(module)

    return _load
