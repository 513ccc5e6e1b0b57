# tests/conftest.py
"""
Shared fixtures for the remediation tests.

- FakeProvider is an in-memory stand-in for Boto3Provider that records every call.
- Mutating calls update the in-memory state so a second run sees the fix.
"""

import csv
import logging

import pytest
from botocore.exceptions import ClientError

from csvremediation import AccountContext, load_control_mappings

MUTATING_CALLS = {
    "modify_snapshot_attribute",
    "create_encrypted_copy",
    "create_snapshot",
    "create_backup_selection",
    "enable_default_encryption_flag",
    "modify_block_device_mapping",
    "replace_policy_document",
    "stop_instance",
}


def client_error(code="InvalidVolume.NotFound", operation="DescribeVolumes"):
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


class FakeProvider:
    def __init__(self, account_id="123456789012", region="us-east-1"):
        self.account_id = account_id
        self.region = region
        self.volumes = {}
        self.snapshots = {}
        self.snapshot_permissions = {}
        self.protected_resources = []
        self.backup_plan_ids = []
        self.default_encryption = False
        self.instances = {}
        self.instance_profiles = {}
        self.role_policies = {}
        self.policies = {}
        self.calls = []
        self.fail_on = {}
        self._counter = 0

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise self.fail_on[name]

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}-new{self._counter}"

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    @property
    def mutations(self):
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    # --- seeding helpers ---

    def add_volume(self, volume_id, **attrs):
        volume = {"VolumeId": volume_id, "State": "available", "AvailabilityZone": "us-east-1a"}
        volume.update(attrs)
        self.volumes[volume_id] = volume
        return volume

    def add_snapshot(self, snapshot_id, volume_id="vol-source", **attrs):
        snapshot = {"SnapshotId": snapshot_id, "VolumeId": volume_id}
        snapshot.update(attrs)
        self.snapshots[snapshot_id] = snapshot
        return snapshot

    def add_instance(self, instance_id, **attrs):
        instance = {"InstanceId": instance_id, "State": {"Name": "running"}}
        instance.update(attrs)
        self.instances[instance_id] = instance
        return instance

    # --- provider interface ---

    def get_account_identity(self):
        self._call("get_account_identity")
        return AccountContext(self.account_id, self.region)

    def describe_volume(self, volume_id):
        self._call("describe_volume", volume_id)
        return self.volumes.get(volume_id)

    def describe_snapshot(self, snapshot_id):
        self._call("describe_snapshot", snapshot_id)
        return self.snapshots.get(snapshot_id)

    def describe_snapshot_permissions(self, snapshot_id):
        self._call("describe_snapshot_permissions", snapshot_id)
        return list(self.snapshot_permissions.get(snapshot_id, []))

    def modify_snapshot_attribute(self, snapshot_id, permissions):
        self._call("modify_snapshot_attribute", snapshot_id)
        remaining = [p for p in self.snapshot_permissions.get(snapshot_id, []) if p not in permissions]
        self.snapshot_permissions[snapshot_id] = remaining

    def create_snapshot(self, volume_id, description):
        self._call("create_snapshot", volume_id)
        snapshot_id = self._next_id("snap")
        self.add_snapshot(snapshot_id, volume_id=volume_id, Description=description)
        return snapshot_id

    def list_volume_snapshots(self, volume_id):
        self._call("list_volume_snapshots", volume_id)
        return [s for s, snap in self.snapshots.items() if snap.get("VolumeId") == volume_id]

    def create_encrypted_copy(self, resource_id, resource_type):
        self._call("create_encrypted_copy", resource_id, resource_type)
        if resource_type == "snapshot":
            new_id = self._next_id("snap")
            self.add_snapshot(new_id, Encrypted=True)
        else:
            new_id = self._next_id("vol")
            self.add_volume(new_id, Encrypted=True)
        return new_id

    def get_default_encryption_flag(self):
        self._call("get_default_encryption_flag")
        return self.default_encryption

    def enable_default_encryption_flag(self):
        self._call("enable_default_encryption_flag")
        self.default_encryption = True

    def list_protected_resources(self):
        self._call("list_protected_resources")
        return list(self.protected_resources)

    def list_backup_plan_ids(self):
        self._call("list_backup_plan_ids")
        return list(self.backup_plan_ids)

    def create_backup_selection(self, backup_plan_id, selection_name, iam_role_arn, resource_arn):
        self._call("create_backup_selection", backup_plan_id, selection_name, iam_role_arn, resource_arn)
        self.protected_resources.append(resource_arn)
        return "selection-1"

    def describe_instance(self, instance_id):
        self._call("describe_instance", instance_id)
        return self.instances.get(instance_id)

    def list_all_instances(self):
        self._call("list_all_instances")
        return list(self.instances.values())

    def modify_block_device_mapping(self, instance_id, device_name, delete_on_termination=True):
        self._call("modify_block_device_mapping", instance_id, device_name)
        for volume in self.volumes.values():
            for attachment in volume.get("Attachments", []):
                if attachment.get("InstanceId") == instance_id and attachment.get("Device") == device_name:
                    attachment["DeleteOnTermination"] = delete_on_termination

    def stop_instance(self, instance_id):
        self._call("stop_instance", instance_id)
        self.instances[instance_id]["State"] = {"Name": "stopped"}

    def get_instance_profile_roles(self, profile_arn):
        self._call("get_instance_profile_roles", profile_arn)
        return list(self.instance_profiles.get(profile_arn, []))

    def list_attached_role_policies(self, role_name):
        self._call("list_attached_role_policies", role_name)
        return list(self.role_policies.get(role_name, []))

    def get_policy_document(self, policy_arn):
        self._call("get_policy_document", policy_arn)
        return self.policies[policy_arn]

    def replace_policy_document(self, role_name, policy_arn, document):
        self._call("replace_policy_document", role_name, policy_arn)
        new_arn = f"{policy_arn}-restricted"
        self.policies[new_arn] = document
        attached = self.role_policies[role_name]
        attached[attached.index(policy_arn)] = new_arn
        return new_arn


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def account(provider):
    return AccountContext(provider.account_id, provider.region)


@pytest.fixture
def mappings():
    return load_control_mappings()


@pytest.fixture
def logger():
    return logging.getLogger("csvremediation.tests")


def security_hub_row(control, resource, service="EBS"):
    """Build a 10-column row with the control in column 4 and the resource in column 8."""
    return [service, "Security Hub", "HIGH", "FAILED", control, "", "", "", resource, "ACTIVE"]


@pytest.fixture
def write_findings(tmp_path):
    """Write rows (plus a header) to a CSV file and return its path."""
    def _write(rows, name="findings.csv", header=None):
        path = tmp_path / name
        width = max((len(r) for r in rows), default=10)
        with open(path, "w", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh)
            writer.writerow(header or [f"col{i}" for i in range(width)])
            writer.writerows(rows)
        return str(path)
    return _write
