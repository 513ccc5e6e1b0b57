#!/usr/bin/env python3
"""
CSV Findings Remediator
=======================
Checks (and optionally fixes) the resources named in a CSV export of cloud
security findings. Each selected control is resolved through a YAML control
mapping to a check/fix routine, the resource id is pulled out of the finding
row, the resource is confirmed to still exist, and the routine classifies it
as needing a fix, compliant, or not found.

AUDIT by default. Nothing is modified unless a control runs in remediate mode.
"""

# === Imports ===

from __future__ import annotations

import argparse
import copy
import csv
import datetime
import json
import logging
import re
import sys
import textwrap
import urllib.parse
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

import boto3
import yaml
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


# === Constants ===

TOOL_NAME = "CSV Findings Remediator"
TOOL_VERSION = "1.0.0"
LOGGER_NAME = "csvremediation"

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_SESSION = 3
EXIT_CONFIG = 4

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

DEFAULT_RESOURCE_PATTERN = re.compile(r"\bvol-[a-zA-Z0-9]+|\bsnap-[a-zA-Z0-9]+")
RESOURCE_ID_PREFIXES = (
    ("vol-", "volume"),
    ("snap-", "snapshot"),
    ("i-", "instance"),
)
RESOURCE_KINDS = {
    "volume": "Volume",
    "snapshot": "Snapshot",
    "instance": "Instance",
    "account": "Account",
}

DEFAULT_LAYOUT = "security-hub"
DEFAULT_OVERBROAD_ACTION = "organizations:Write"
DEFAULT_BACKUP_ROLE = "arn:aws:iam::{account_id}:role/service-role/AWSBackupDefaultServiceRole"
DEFAULT_TIMEOUT = 30

DEFAULT_CONTROL_MAPPINGS_YAML = """\
# Control name (exact match against the findings CSV) -> check/fix routine.
controls:
  "EBS snapshots should not be publicly restorable":
    function: "ensure_private_snapshots"
    description: "Ensures EBS snapshots are not publicly accessible"
    service: "EBS"
    resource_type: "snapshot"
    resource_pattern: '\\bsnap-[a-zA-Z0-9]+'
  "Attached EBS volumes should have encryption enabled":
    function: "ensure_encrypted_volumes"
    description: "Ensures attached EBS volumes are encrypted"
    service: "EBS"
    resource_type: "volume"
    resource_pattern: '\\bvol-[a-zA-Z0-9]+'
  "EBS volumes should be protected by a backup plan":
    function: "ensure_backup_plan"
    description: "Ensures EBS volumes are protected by backup plans"
    service: "EBS"
    resource_type: "volume"
    resource_pattern: '\\bvol-[a-zA-Z0-9]+'
  "EBS encryption by default should be enabled":
    function: "ensure_ebs_encryption_default"
    description: "Ensures EBS encryption by default is enabled"
    service: "EBS"
    resource_type: "account"
  "EBS volumes should be attached to EC2 instances":
    function: "ensure_ebs_attached"
    description: "Ensures EBS volumes are attached to EC2 instances"
    service: "EBS"
    resource_type: "volume"
    resource_pattern: '\\bvol-[a-zA-Z0-9]+'
  "EBS snapshots should be encrypted":
    function: "ensure_snapshot_encryption"
    description: "Ensures EBS snapshots are encrypted"
    service: "EBS"
    resource_type: "snapshot"
    resource_pattern: '\\bsnap-[a-zA-Z0-9]+'
  "EBS volume snapshots should exist":
    function: "ensure_snapshots_exist"
    description: "Ensures EBS volumes have snapshots"
    service: "EBS"
    resource_type: "volume"
    resource_pattern: '\\bvol-[a-zA-Z0-9]+'
  "Attached EBS volumes should have delete on termination enabled":
    function: "ensure_delete_on_termination"
    description: "Ensures attached EBS volumes have delete on termination enabled"
    service: "EBS"
    resource_type: "volume"
    resource_pattern: '\\bvol-[a-zA-Z0-9]+'
  "EC2 instance IAM role should not allow organization write access":
    function: "restrict_iam_role_permissions"
    description: "Ensures EC2 instance IAM roles don't have organization write access"
    service: "EC2"
    resource_type: "instance"
    resource_pattern: '\\bi-[a-zA-Z0-9]+'
  "EC2 instances should be in a VPC":
    function: "check_vpc_compliance"
    description: "Ensures all EC2 instances are launched within a VPC"
    service: "EC2"
    resource_type: "instance"
    resource_pattern: '\\bi-[a-zA-Z0-9]+'
"""

REMEDIATE_WARNING = """
╔══════════════════════════════════════════════════════════════════════════╗
║  REMEDIATE MODE: non-compliant resources WILL be modified.               ║
║  Encrypted copies, snapshots, backup selections and IAM policies are     ║
║  created; snapshot permissions and instance attributes are changed.      ║
║  Run in audit mode first and review every finding.                       ║
╚══════════════════════════════════════════════════════════════════════════╝
"""

EXAMPLES_TEXT = """
Real-World Usage Examples
─────────────────────────

# --- AUDIT (read-only, default) ---

# Check every volume in the export against the encryption control
  csvremediation findings.csv "Attached EBS volumes should have encryption enabled"

# Check two controls and write a JSON report
  csvremediation findings.csv "EBS snapshots should be encrypted" \\
      "EBS volume snapshots should exist" --output json --output-file report.json

# Findings export with the service in column 0 and the control in column 1
  csvremediation findings.csv "EC2 instances should be in a VPC" --layout service-first

# --- REMEDIATE (modifies resources) ---

# Strip public restore permissions from snapshots
  csvremediation findings.csv "EBS snapshots should not be publicly restorable" \\
      --mode remediate --confirm

# --- CONFIGURATION ---

# Write the built-in control mapping, edit it, and use it
  csvremediation --write-mappings control_mappings.yaml
  csvremediation findings.csv "My control" --mappings control_mappings.yaml
"""


# === Errors ===

class RemediationError(Exception):
    """Base class for errors that stop a run."""


class UsageError(RemediationError):
    """The caller supplied an unusable set of arguments."""


class ConfigurationError(RemediationError):
    """A required input file is missing or malformed."""


class MappingError(ConfigurationError):
    """The control mapping could not be loaded."""


class ProviderSessionError(RemediationError):
    """AWS credentials, region or identity could not be established."""


# === Data Models ===

class Mode(str, Enum):
    AUDIT = "audit"
    REMEDIATE = "remediate"


class OutcomeCategory(str, Enum):
    NEEDS_FIX = "NEEDS_FIX"
    COMPLIANT = "COMPLIANT"
    NOT_FOUND = "NOT_FOUND"
    MANUAL_ACTION = "MANUAL_ACTION"


class Scope(str, Enum):
    RESOURCE = "resource"
    ACCOUNT = "account"
    DISCOVERY = "discovery"


@dataclass(frozen=True)
class ColumnLayout:
    """Zero-based column positions inside a findings row."""
    control: int
    resource: int
    service: Optional[int] = None

    @property
    def width(self) -> int:
        used = [i for i in (self.control, self.resource, self.service) if i is not None]
        return max(used) + 1


COLUMN_LAYOUTS = {
    "security-hub": ColumnLayout(control=4, resource=8),
    "service-first": ColumnLayout(control=1, resource=7, service=0),
}


@dataclass(frozen=True)
class ControlSpec:
    """One entry of the control mapping."""
    name: str
    handler: str
    description: str = ""
    service: str = ""
    resource_type: str = ""
    resource_pattern: Optional[re.Pattern] = None
    mode: Optional[Mode] = None


@dataclass(frozen=True)
class FindingRow:
    line_number: int
    control_name: str
    resource_reference: str
    service: str = ""


@dataclass(frozen=True)
class AccountContext:
    account_id: str
    region: str


@dataclass(frozen=True)
class OutcomeRecord:
    """Result of evaluating one resource against one control."""
    category: OutcomeCategory
    resource_kind: str
    resource_id: str
    reason: str
    control: str = ""
    action: str = ""


@dataclass(frozen=True)
class Summary:
    need_fix: int
    compliant: int
    not_found: int
    manual_action: int = 0


_BUCKETS = {
    OutcomeCategory.NEEDS_FIX: "need_fix",
    OutcomeCategory.COMPLIANT: "compliant",
    OutcomeCategory.NOT_FOUND: "not_found",
    OutcomeCategory.MANUAL_ACTION: "manual_action",
}


@dataclass
class RunResults:
    """Outcome records of one run, kept in processing order per bucket."""
    need_fix: list[OutcomeRecord] = field(default_factory=list)
    compliant: list[OutcomeRecord] = field(default_factory=list)
    not_found: list[OutcomeRecord] = field(default_factory=list)
    manual_action: list[OutcomeRecord] = field(default_factory=list)

    def add(self, record: OutcomeRecord) -> None:
        getattr(self, _BUCKETS[record.category]).append(record)

    def extend(self, records: Iterable[OutcomeRecord]) -> None:
        for record in records:
            self.add(record)

    def merge(self, other: RunResults) -> None:
        for attr in _BUCKETS.values():
            getattr(self, attr).extend(getattr(other, attr))

    @property
    def records(self) -> list[OutcomeRecord]:
        return self.need_fix + self.manual_action + self.not_found + self.compliant

    def summary(self) -> Summary:
        return Summary(
            need_fix=len(self.need_fix),
            compliant=len(self.compliant),
            not_found=len(self.not_found),
            manual_action=len(self.manual_action),
        )


@dataclass
class RunOptions:
    """Run-level knobs shared by every routine."""
    default_mode: Mode = Mode.AUDIT
    layout: ColumnLayout = COLUMN_LAYOUTS[DEFAULT_LAYOUT]
    overbroad_action: str = DEFAULT_OVERBROAD_ACTION
    backup_plan_id: Optional[str] = None
    backup_role_arn: Optional[str] = None
    auto_stop_non_vpc_instances: bool = False


@dataclass
class RemediationReport:
    """Aggregated result of a run."""
    findings_file: str
    controls: list[str]
    mode: str
    account_id: str
    region: str
    start_time: str
    end_time: str = ""
    results: RunResults = field(default_factory=RunResults)

    @property
    def summary(self) -> Summary:
        return self.results.summary()


# === Utility Functions ===

def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Configure leveled logging.

    Args:
        verbose: Enable INFO-level logging.
        debug: Enable DEBUG-level logging (overrides verbose).

    Returns:
        Configured logger instance.
    """
    level = SUCCESS
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        level=level,
        stream=sys.stderr,
    )
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    return logger


def truncate(text: str, max_len: int = 60) -> str:
    """Truncate string to max_len characters."""
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def extract_resource_id(reference: str, pattern: Optional[re.Pattern] = None) -> str:
    """Return the first resource id found in a free-text reference, or ''."""
    match = (pattern or DEFAULT_RESOURCE_PATTERN).search(reference or "")
    return match.group(0) if match else ""


def infer_resource_type(resource_id: str) -> str:
    for prefix, resource_type in RESOURCE_ID_PREFIXES:
        if resource_id.startswith(prefix):
            return resource_type
    return ""


def resource_kind(resource_type: str) -> str:
    return RESOURCE_KINDS.get(resource_type, resource_type.title() or "Resource")


def volume_arn(account: AccountContext, volume_id: str) -> str:
    return f"arn:aws:ec2:{account.region}:{account.account_id}:volume/{volume_id}"


def classify_encryption(value: Any) -> tuple[bool, str]:
    """Classify an ``Encrypted`` attribute as (compliant, reason).

    Anything other than an explicit true, including a missing or unreadable
    value, counts as not encrypted.
    """
    if isinstance(value, str):
        value = {"true": True, "false": False}.get(value.strip().lower())
    if value is True:
        return True, "Encrypted"
    if value is False:
        return False, "Not encrypted"
    return False, "Encryption state unknown"


def policy_allows_action(document: dict, action: str) -> bool:
    """Return True if any Allow statement lists ``action`` (case-insensitive)."""
    wanted = action.lower()
    for stmt in _as_list(document.get("Statement")):
        if stmt.get("Effect") != "Allow":
            continue
        if any(str(a).lower() == wanted for a in _as_list(stmt.get("Action"))):
            return True
    return False


def remove_action(document: dict, action: str) -> dict:
    """Return a copy of a policy document with ``action`` removed from Allow statements.

    Statements left with no actions are dropped.
    """
    wanted = action.lower()
    restricted = copy.deepcopy(document)
    kept = []
    for stmt in _as_list(restricted.get("Statement")):
        if stmt.get("Effect") != "Allow" or "Action" not in stmt:
            kept.append(stmt)
            continue
        actions = [a for a in _as_list(stmt["Action"]) if str(a).lower() != wanted]
        if not actions:
            continue
        stmt["Action"] = actions if len(actions) > 1 else actions[0]
        kept.append(stmt)
    restricted["Statement"] = kept
    return restricted


# === Provider ===

class Boto3Provider:
    """AWS calls used by the routines, one method per operation.

    Lookups return None when the resource does not exist; every other
    failure surfaces as a botocore ``ClientError`` or ``BotoCoreError``.
    """

    def __init__(self, session: Any, config: Optional[Config] = None) -> None:
        self.session = session
        self._ec2 = session.client("ec2", config=config)
        self._sts = session.client("sts", config=config)
        self._iam = session.client("iam", config=config)
        self._backup = session.client("backup", config=config)
        self._account_id = ""

    @property
    def region(self) -> str:
        return self._ec2.meta.region_name or ""

    # --- identity ---

    def get_account_identity(self) -> AccountContext:
        identity = self._sts.get_caller_identity()
        self._account_id = identity["Account"]
        return AccountContext(account_id=self._account_id, region=self.region)

    def _owner_ids(self) -> list[str]:
        return [self._account_id] if self._account_id else ["self"]

    # --- volumes and snapshots ---

    def describe_volume(self, volume_id: str) -> Optional[dict]:
        try:
            volumes = self._ec2.describe_volumes(VolumeIds=[volume_id]).get("Volumes", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidVolume.NotFound":
                return None
            raise
        return volumes[0] if volumes else None

    def describe_snapshot(self, snapshot_id: str) -> Optional[dict]:
        try:
            snapshots = self._ec2.describe_snapshots(
                SnapshotIds=[snapshot_id], OwnerIds=self._owner_ids(),
            ).get("Snapshots", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidSnapshot.NotFound":
                return None
            raise
        return snapshots[0] if snapshots else None

    def describe_snapshot_permissions(self, snapshot_id: str) -> list[dict]:
        resp = self._ec2.describe_snapshot_attribute(
            SnapshotId=snapshot_id, Attribute="createVolumePermission",
        )
        return resp.get("CreateVolumePermissions", [])

    def modify_snapshot_attribute(self, snapshot_id: str, permissions: list[dict]) -> None:
        """Remove the given createVolumePermission grants from a snapshot."""
        kwargs: dict[str, Any] = {}
        groups = [p["Group"] for p in permissions if p.get("Group")]
        user_ids = [p["UserId"] for p in permissions if p.get("UserId")]
        if groups:
            kwargs["GroupNames"] = groups
        if user_ids:
            kwargs["UserIds"] = user_ids
        if not kwargs:
            return
        self._ec2.modify_snapshot_attribute(
            SnapshotId=snapshot_id,
            Attribute="createVolumePermission",
            OperationType="remove",
            **kwargs,
        )

    def create_snapshot(self, volume_id: str, description: str) -> str:
        resp = self._ec2.create_snapshot(VolumeId=volume_id, Description=description)
        return resp["SnapshotId"]

    def list_volume_snapshots(self, volume_id: str) -> list[str]:
        paginator = self._ec2.get_paginator("describe_snapshots")
        pages = paginator.paginate(
            OwnerIds=self._owner_ids(),
            Filters=[{"Name": "volume-id", "Values": [volume_id]}],
        )
        return [s["SnapshotId"] for page in pages for s in page.get("Snapshots", [])]

    def create_encrypted_copy(self, resource_id: str, resource_type: str) -> str:
        """Create an encrypted copy of a volume or snapshot and return the new id."""
        if resource_type == "snapshot":
            resp = self._ec2.copy_snapshot(
                SourceSnapshotId=resource_id,
                SourceRegion=self.region,
                Encrypted=True,
                Description=f"Encrypted copy of {resource_id}",
            )
            return resp["SnapshotId"]
        if resource_type != "volume":
            raise ValueError(f"Cannot create an encrypted copy of a {resource_type!r}")

        volume = self.describe_volume(resource_id)
        if volume is None:
            raise ValueError(f"Volume {resource_id} no longer exists")
        snapshot_id = self.create_snapshot(resource_id, "Temporary snapshot for encryption")
        self._ec2.get_waiter("snapshot_completed").wait(SnapshotIds=[snapshot_id])
        resp = self._ec2.create_volume(
            SnapshotId=snapshot_id,
            AvailabilityZone=volume["AvailabilityZone"],
            Encrypted=True,
            VolumeType="gp3",
        )
        return resp["VolumeId"]

    def get_default_encryption_flag(self) -> bool:
        return bool(self._ec2.get_ebs_encryption_by_default().get("EbsEncryptionByDefault"))

    def enable_default_encryption_flag(self) -> None:
        self._ec2.enable_ebs_encryption_by_default()

    # --- backup ---

    def list_protected_resources(self) -> list[str]:
        paginator = self._backup.get_paginator("list_protected_resources")
        return [r["ResourceArn"] for page in paginator.paginate() for r in page.get("Results", [])]

    def list_backup_plan_ids(self) -> list[str]:
        paginator = self._backup.get_paginator("list_backup_plans")
        return [
            p["BackupPlanId"] for page in paginator.paginate()
            for p in page.get("BackupPlansList", [])
        ]

    def create_backup_selection(
        self,
        backup_plan_id: str,
        selection_name: str,
        iam_role_arn: str,
        resource_arn: str,
    ) -> str:
        resp = self._backup.create_backup_selection(
            BackupPlanId=backup_plan_id,
            BackupSelection={
                "SelectionName": selection_name,
                "IamRoleArn": iam_role_arn,
                "Resources": [resource_arn],
            },
        )
        return resp["SelectionId"]

    # --- instances ---

    def describe_instance(self, instance_id: str) -> Optional[dict]:
        try:
            resp = self._ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound":
                return None
            raise
        instances = [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]
        return instances[0] if instances else None

    def list_all_instances(self) -> list[dict]:
        paginator = self._ec2.get_paginator("describe_instances")
        return [
            i for page in paginator.paginate()
            for r in page.get("Reservations", [])
            for i in r.get("Instances", [])
        ]

    def modify_block_device_mapping(
        self, instance_id: str, device_name: str, delete_on_termination: bool = True,
    ) -> None:
        self._ec2.modify_instance_attribute(
            InstanceId=instance_id,
            BlockDeviceMappings=[{
                "DeviceName": device_name,
                "Ebs": {"DeleteOnTermination": delete_on_termination},
            }],
        )

    def stop_instance(self, instance_id: str) -> None:
        self._ec2.stop_instances(InstanceIds=[instance_id])

    # --- IAM ---

    def get_instance_profile_roles(self, profile_arn: str) -> list[str]:
        profile_name = profile_arn.rsplit("/", 1)[-1]
        profile = self._iam.get_instance_profile(InstanceProfileName=profile_name)
        return [r["RoleName"] for r in profile["InstanceProfile"].get("Roles", [])]

    def list_attached_role_policies(self, role_name: str) -> list[str]:
        paginator = self._iam.get_paginator("list_attached_role_policies")
        return [
            p["PolicyArn"] for page in paginator.paginate(RoleName=role_name)
            for p in page.get("AttachedPolicies", [])
        ]

    def get_policy_document(self, policy_arn: str) -> dict:
        version_id = self._iam.get_policy(PolicyArn=policy_arn)["Policy"]["DefaultVersionId"]
        document = self._iam.get_policy_version(
            PolicyArn=policy_arn, VersionId=version_id,
        )["PolicyVersion"]["Document"]
        if isinstance(document, str):
            document = json.loads(urllib.parse.unquote(document))
        return document

    def replace_policy_document(self, role_name: str, policy_arn: str, document: dict) -> str:
        """Swap an attached policy for a new one holding ``document``; return its ARN."""
        policy_name = policy_arn.rsplit("/", 1)[-1]
        new_name = f"{role_name}_{policy_name}_Restricted"[:128]
        new_arn = self._iam.create_policy(
            PolicyName=new_name, PolicyDocument=json.dumps(document),
        )["Policy"]["Arn"]
        self._iam.detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        self._iam.attach_role_policy(RoleName=role_name, PolicyArn=new_arn)
        return new_arn


def build_provider(
    profile: Optional[str] = None,
    region: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> Boto3Provider:
    """Create a provider bound to a boto3 session.

    Raises:
        ProviderSessionError: If the profile or region cannot be resolved.
    """
    cfg = Config(
        read_timeout=timeout,
        connect_timeout=timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
        return Boto3Provider(session, config=cfg)
    except BotoCoreError as exc:
        raise ProviderSessionError(f"Cannot create AWS session: {exc}") from exc


def establish_session(provider: Any, logger: logging.Logger) -> AccountContext:
    """Resolve the account and region the run operates in.

    Raises:
        ProviderSessionError: If the caller identity cannot be fetched.
    """
    logger.info("Checking AWS configuration...")
    try:
        account = provider.get_account_identity()
    except (ClientError, BotoCoreError) as exc:
        raise ProviderSessionError(f"AWS credentials are not usable: {exc}") from exc
    if not account.region:
        raise ProviderSessionError("No AWS region configured. Pass --region or set AWS_REGION.")
    logger.log(SUCCESS, "AWS configured (Account: %s, Region: %s)", account.account_id, account.region)
    return account


def validate_resource(
    provider: Any,
    resource_id: str,
    resource_type: str,
    logger: logging.Logger,
) -> bool:
    """Return True if the resource exists."""
    lookups: dict[str, Callable[[str], Optional[dict]]] = {
        "volume": provider.describe_volume,
        "snapshot": provider.describe_snapshot,
        "instance": provider.describe_instance,
    }
    lookup = lookups.get(resource_type)
    if lookup is None:
        logger.error("Unsupported resource type %r for %s", resource_type, resource_id)
        return False
    try:
        return lookup(resource_id) is not None
    except (ClientError, BotoCoreError) as exc:
        logger.debug("Lookup of %s %s failed: %s", resource_type, resource_id, exc)
        return False


# === Routines ===
# Each routine takes a RoutineContext and a resource id (None for account
# scope, or for discovery routines asked to scan everything) and returns the
# outcome records it produced. Provider errors propagate to invoke_routine.

@dataclass
class RoutineContext:
    provider: Any
    account: AccountContext
    options: RunOptions
    logger: logging.Logger
    mode: Mode = Mode.AUDIT
    control: str = ""

    @property
    def remediate(self) -> bool:
        return self.mode is Mode.REMEDIATE

    def _record(
        self, category: OutcomeCategory, kind: str, resource_id: str, reason: str, action: str = "",
    ) -> OutcomeRecord:
        return OutcomeRecord(
            category=category,
            resource_kind=kind,
            resource_id=resource_id,
            reason=reason,
            control=self.control,
            action=action,
        )

    def compliant(self, kind: str, resource_id: str, reason: str) -> OutcomeRecord:
        self.logger.log(SUCCESS, "%s %s: %s", kind, resource_id, reason)
        return self._record(OutcomeCategory.COMPLIANT, kind, resource_id, reason)

    def needs_fix(self, kind: str, resource_id: str, reason: str, action: str = "") -> OutcomeRecord:
        self.logger.warning("%s %s: %s", kind, resource_id, reason)
        if action:
            self.logger.log(SUCCESS, "%s %s: %s", kind, resource_id, action)
        return self._record(OutcomeCategory.NEEDS_FIX, kind, resource_id, reason, action)

    def not_found(self, kind: str, resource_id: str, reason: str = "Not found") -> OutcomeRecord:
        self.logger.error("%s %s: %s", kind, resource_id, reason)
        return self._record(OutcomeCategory.NOT_FOUND, kind, resource_id, reason)

    def manual_action(self, kind: str, resource_id: str, reason: str) -> OutcomeRecord:
        self.logger.warning("%s %s: manual action required: %s", kind, resource_id, reason)
        return self._record(OutcomeCategory.MANUAL_ACTION, kind, resource_id, reason)


def ensure_private_snapshots(ctx: RoutineContext, snapshot_id: Optional[str]) -> list[OutcomeRecord]:
    """Snapshot must not carry any createVolumePermission grant."""
    ctx.logger.info("Checking if snapshot %s is public...", snapshot_id)
    permissions = ctx.provider.describe_snapshot_permissions(snapshot_id)
    if not permissions:
        return [ctx.compliant("Snapshot", snapshot_id, "Private access")]
    if not ctx.remediate:
        return [ctx.needs_fix("Snapshot", snapshot_id, "Public access")]
    ctx.provider.modify_snapshot_attribute(snapshot_id, permissions)
    return [ctx.needs_fix(
        "Snapshot", snapshot_id, "Public access",
        action=f"Removed {len(permissions)} createVolumePermission grant(s)",
    )]


def ensure_encrypted_volumes(ctx: RoutineContext, volume_id: Optional[str]) -> list[OutcomeRecord]:
    ctx.logger.info("Checking encryption for volume: %s", volume_id)
    volume = ctx.provider.describe_volume(volume_id)
    if volume is None:
        return [ctx.not_found("Volume", volume_id)]
    encrypted, reason = classify_encryption(volume.get("Encrypted"))
    if encrypted:
        return [ctx.compliant("Volume", volume_id, reason)]
    if not ctx.remediate:
        return [ctx.needs_fix("Volume", volume_id, reason)]
    new_volume_id = ctx.provider.create_encrypted_copy(volume_id, "volume")
    return [ctx.needs_fix("Volume", volume_id, reason, action=f"Created encrypted volume {new_volume_id}")]


def ensure_backup_plan(ctx: RoutineContext, volume_id: Optional[str]) -> list[OutcomeRecord]:
    """Volume must be among the AWS Backup protected resources.

    Remediation binds the volume to the configured plan, or to the first
    plan in the account; with no plan at all the fix is left to a human.
    """
    ctx.logger.info("Checking if volume %s is in a backup plan...", volume_id)
    arn = volume_arn(ctx.account, volume_id)
    protected = ctx.provider.list_protected_resources()
    if any(a == arn or a.endswith(f"/{volume_id}") for a in protected):
        return [ctx.compliant("Volume", volume_id, "In backup plan")]
    if not ctx.remediate:
        return [ctx.needs_fix("Volume", volume_id, "No backup plan")]

    plan_id = ctx.options.backup_plan_id or next(iter(ctx.provider.list_backup_plan_ids()), None)
    if not plan_id:
        return [ctx.manual_action("Volume", volume_id, "No backup plan exists to add the volume to")]
    role_arn = ctx.options.backup_role_arn or DEFAULT_BACKUP_ROLE.format(account_id=ctx.account.account_id)
    selection_id = ctx.provider.create_backup_selection(plan_id, f"Volume-{volume_id}", role_arn, arn)
    return [ctx.needs_fix(
        "Volume", volume_id, "No backup plan",
        action=f"Added to backup plan {plan_id} (selection {selection_id})",
    )]


def ensure_ebs_encryption_default(ctx: RoutineContext, _resource_id: Optional[str] = None) -> list[OutcomeRecord]:
    ctx.logger.info("Checking EBS encryption by default...")
    account_id = ctx.account.account_id
    if ctx.provider.get_default_encryption_flag():
        return [ctx.compliant("Account", account_id, "EBS encryption by default enabled")]
    if not ctx.remediate:
        return [ctx.needs_fix("Account", account_id, "EBS encryption by default disabled")]
    ctx.provider.enable_default_encryption_flag()
    return [ctx.needs_fix(
        "Account", account_id, "EBS encryption by default disabled",
        action="Enabled EBS encryption by default",
    )]


def ensure_ebs_attached(ctx: RoutineContext, volume_id: Optional[str]) -> list[OutcomeRecord]:
    ctx.logger.info("Checking if volume %s is attached...", volume_id)
    volume = ctx.provider.describe_volume(volume_id)
    if volume is None:
        return [ctx.not_found("Volume", volume_id)]
    if volume.get("State") == "in-use":
        return [ctx.compliant("Volume", volume_id, "Attached")]
    if ctx.remediate:
        # choosing the target instance is not something we can decide
        return [ctx.manual_action("Volume", volume_id, "Not attached; attach it to an appropriate EC2 instance")]
    return [ctx.needs_fix("Volume", volume_id, "Not attached")]


def ensure_snapshot_encryption(ctx: RoutineContext, snapshot_id: Optional[str]) -> list[OutcomeRecord]:
    ctx.logger.info("Checking encryption for snapshot: %s", snapshot_id)
    snapshot = ctx.provider.describe_snapshot(snapshot_id)
    if snapshot is None:
        return [ctx.not_found("Snapshot", snapshot_id)]
    encrypted, reason = classify_encryption(snapshot.get("Encrypted"))
    if encrypted:
        return [ctx.compliant("Snapshot", snapshot_id, reason)]
    if not ctx.remediate:
        return [ctx.needs_fix("Snapshot", snapshot_id, reason)]
    new_snapshot_id = ctx.provider.create_encrypted_copy(snapshot_id, "snapshot")
    return [ctx.needs_fix("Snapshot", snapshot_id, reason, action=f"Created encrypted snapshot {new_snapshot_id}")]


def ensure_snapshots_exist(ctx: RoutineContext, volume_id: Optional[str]) -> list[OutcomeRecord]:
    ctx.logger.info("Checking if volume %s has snapshots...", volume_id)
    if ctx.provider.list_volume_snapshots(volume_id):
        return [ctx.compliant("Volume", volume_id, "Has snapshots")]
    if not ctx.remediate:
        return [ctx.needs_fix("Volume", volume_id, "No snapshots")]
    snapshot_id = ctx.provider.create_snapshot(volume_id, "Automated snapshot creation")
    return [ctx.needs_fix("Volume", volume_id, "No snapshots", action=f"Created snapshot {snapshot_id}")]


def ensure_delete_on_termination(ctx: RoutineContext, volume_id: Optional[str]) -> list[OutcomeRecord]:
    """Volume's attachment must have DeleteOnTermination set.

    A volume with no attachment is reported as not found ("Not attached")
    rather than passed.
    """
    ctx.logger.info("Checking DeleteOnTermination for volume: %s", volume_id)
    volume = ctx.provider.describe_volume(volume_id)
    if volume is None:
        return [ctx.not_found("Volume", volume_id)]
    attachments = volume.get("Attachments") or []
    attachment = attachments[0] if attachments else {}
    instance_id = attachment.get("InstanceId")
    if not instance_id:
        return [ctx.not_found("Volume", volume_id, "Not attached")]
    if attachment.get("DeleteOnTermination") is True:
        return [ctx.compliant("Volume", volume_id, "DeleteOnTermination enabled")]
    if not ctx.remediate:
        return [ctx.needs_fix("Volume", volume_id, "DeleteOnTermination disabled")]

    device = attachment.get("Device")
    if not device:
        return [ctx.manual_action("Volume", volume_id, f"Attachment to {instance_id} has no device name")]
    ctx.provider.modify_block_device_mapping(instance_id, device)
    return [ctx.needs_fix(
        "Volume", volume_id, "DeleteOnTermination disabled",
        action=f"Enabled DeleteOnTermination for {device} on {instance_id}",
    )]


def _instances_for(ctx: RoutineContext, instance_id: Optional[str]) -> list[dict]:
    if instance_id:
        instance = ctx.provider.describe_instance(instance_id)
        return [instance] if instance else []
    ctx.logger.info("No instance id given. Scanning all EC2 instances...")
    instances = ctx.provider.list_all_instances()
    if not instances:
        ctx.logger.info("No EC2 instances found.")
    return instances


def _check_role(ctx: RoutineContext, role_name: str) -> OutcomeRecord:
    action = ctx.options.overbroad_action
    offending: list[tuple[str, dict]] = []
    for policy_arn in ctx.provider.list_attached_role_policies(role_name):
        document = ctx.provider.get_policy_document(policy_arn)
        if policy_allows_action(document, action):
            offending.append((policy_arn, document))

    if not offending:
        return ctx.compliant("IAM role", role_name, f"No attached policy allows {action}")
    names = ", ".join(arn.rsplit("/", 1)[-1] for arn, _ in offending)
    reason = f"Allows {action} via {names}"
    if not ctx.remediate:
        return ctx.needs_fix("IAM role", role_name, reason)

    replaced = [
        ctx.provider.replace_policy_document(role_name, arn, remove_action(document, action))
        for arn, document in offending
    ]
    return ctx.needs_fix("IAM role", role_name, reason, action=f"Replaced with {', '.join(replaced)}")


def restrict_iam_role_permissions(ctx: RoutineContext, instance_id: Optional[str]) -> list[OutcomeRecord]:
    """Instance roles must not be granted the configured over-broad action."""
    ctx.logger.info("Starting EC2 IAM role permissions validation...")
    records: list[OutcomeRecord] = []
    seen_roles: set[str] = set()
    for instance in _instances_for(ctx, instance_id):
        iid = instance.get("InstanceId", "")
        profile_arn = (instance.get("IamInstanceProfile") or {}).get("Arn")
        if not profile_arn:
            ctx.logger.info("No IAM role attached to instance %s. Skipping...", iid)
            continue
        try:
            for role_name in ctx.provider.get_instance_profile_roles(profile_arn):
                if role_name in seen_roles:
                    continue
                seen_roles.add(role_name)
                records.append(_check_role(ctx, role_name))
        except (ClientError, BotoCoreError) as exc:
            ctx.logger.error("Failed to check IAM role of instance %s: %s", iid, exc)
    return records


def check_vpc_compliance(ctx: RoutineContext, instance_id: Optional[str]) -> list[OutcomeRecord]:
    """Instances must live in a VPC.

    Non-VPC instances are only stopped when auto_stop_non_vpc_instances is
    set and the control runs in remediate mode.
    """
    ctx.logger.info("Starting EC2 VPC compliance check...")
    records: list[OutcomeRecord] = []
    for instance in _instances_for(ctx, instance_id):
        iid = instance.get("InstanceId", "")
        vpc_id = instance.get("VpcId")
        if vpc_id:
            records.append(ctx.compliant("Instance", iid, f"In VPC {vpc_id}"))
            continue
        reason = "Not in a VPC (EC2-Classic)"
        if not (ctx.remediate and ctx.options.auto_stop_non_vpc_instances):
            records.append(ctx.needs_fix("Instance", iid, reason))
            continue
        try:
            ctx.provider.stop_instance(iid)
        except (ClientError, BotoCoreError) as exc:
            ctx.logger.error("Failed to stop instance %s: %s", iid, exc)
            continue
        records.append(ctx.needs_fix("Instance", iid, reason, action="Stopped instance for migration"))
    return records


@dataclass(frozen=True)
class Routine:
    name: str
    scope: Scope
    resource_type: str
    check: Callable[[RoutineContext, Optional[str]], list[OutcomeRecord]]


ROUTINES: dict[str, Routine] = {
    r.name: r for r in (
        Routine("ensure_private_snapshots", Scope.RESOURCE, "snapshot", ensure_private_snapshots),
        Routine("ensure_encrypted_volumes", Scope.RESOURCE, "volume", ensure_encrypted_volumes),
        Routine("ensure_backup_plan", Scope.RESOURCE, "volume", ensure_backup_plan),
        Routine("ensure_ebs_encryption_default", Scope.ACCOUNT, "account", ensure_ebs_encryption_default),
        Routine("ensure_ebs_attached", Scope.RESOURCE, "volume", ensure_ebs_attached),
        Routine("ensure_snapshot_encryption", Scope.RESOURCE, "snapshot", ensure_snapshot_encryption),
        Routine("ensure_snapshots_exist", Scope.RESOURCE, "volume", ensure_snapshots_exist),
        Routine("ensure_delete_on_termination", Scope.RESOURCE, "volume", ensure_delete_on_termination),
        Routine("restrict_iam_role_permissions", Scope.DISCOVERY, "instance", restrict_iam_role_permissions),
        Routine("check_vpc_compliance", Scope.DISCOVERY, "instance", check_vpc_compliance),
    )
}


# === Control Mapping ===

def parse_control_mappings(data: Any, source: str = "<mapping>") -> dict[str, ControlSpec]:
    """Build ControlSpecs from parsed YAML, compiling patterns once.

    Raises:
        MappingError: On a malformed entry, unknown function or bad pattern.
    """
    if not isinstance(data, dict) or not isinstance(data.get("controls"), dict):
        raise MappingError(f"{source}: expected a top-level 'controls' mapping")

    mappings: dict[str, ControlSpec] = {}
    for name, entry in data["controls"].items():
        if not isinstance(entry, dict) or not entry.get("function"):
            raise MappingError(f"{source}: control {name!r} has no function")
        handler = str(entry["function"])
        if handler not in ROUTINES:
            raise MappingError(f"{source}: control {name!r} maps to unknown function {handler!r}")

        pattern = entry.get("resource_pattern")
        try:
            compiled = re.compile(pattern) if pattern else None
        except re.error as exc:
            raise MappingError(f"{source}: control {name!r} has an invalid resource_pattern: {exc}") from exc

        mode = entry.get("mode")
        try:
            mode = Mode(mode) if mode else None
        except ValueError as exc:
            raise MappingError(f"{source}: control {name!r} has unknown mode {mode!r}") from exc

        mappings[str(name)] = ControlSpec(
            name=str(name),
            handler=handler,
            description=str(entry.get("description") or ""),
            service=str(entry.get("service") or ""),
            resource_type=str(entry.get("resource_type") or ""),
            resource_pattern=compiled,
            mode=mode,
        )
    return mappings


def load_control_mappings(path: Optional[str] = None) -> dict[str, ControlSpec]:
    """Load the control mapping from a YAML file, or the built-in one if path is None."""
    if path is None:
        text, source = DEFAULT_CONTROL_MAPPINGS_YAML, "<built-in>"
    else:
        mapping_file = Path(path)
        if not mapping_file.is_file():
            raise MappingError(f"Control mapping file not found: {path}")
        text, source = mapping_file.read_text(encoding="utf-8"), path
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MappingError(f"{source}: invalid YAML: {exc}") from exc
    return parse_control_mappings(data, source)


# === Findings Reader ===

def read_findings(
    path: str,
    layout: ColumnLayout,
    logger: logging.Logger,
) -> Iterator[FindingRow]:
    """Yield finding rows in file order, skipping the header line.

    Raises:
        ConfigurationError: If the file cannot be read or decoded as UTF-8 CSV.
    """
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as fh:
            reader = csv.reader(fh)
            next(reader, None)
            for line_number, row in enumerate(reader, start=2):
                if not row:
                    continue
                if len(row) < layout.width:
                    logger.warning(
                        "Line %d: expected at least %d columns, got %d. Skipping.",
                        line_number, layout.width, len(row),
                    )
                    continue
                yield FindingRow(
                    line_number=line_number,
                    control_name=row[layout.control],
                    resource_reference=row[layout.resource],
                    service=row[layout.service] if layout.service is not None else "",
                )
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"{path}: not a UTF-8 CSV file: {exc}") from exc
    except (OSError, csv.Error) as exc:
        raise ConfigurationError(f"{path}: cannot read findings: {exc}") from exc


# === Dispatcher ===

def invoke_routine(routine: Routine, ctx: RoutineContext, resource_id: Optional[str]) -> list[OutcomeRecord]:
    """Run a routine; a failure is logged and yields no records."""
    try:
        return list(routine.check(ctx, resource_id))
    except Exception as exc:
        ctx.logger.error(
            "%s failed for %s: %s",
            routine.name,
            resource_id or ctx.account.account_id,
            exc,
        )
        return []


def process_row(
    row: FindingRow,
    selected_controls: set[str],
    mappings: dict[str, ControlSpec],
    provider: Any,
    account: AccountContext,
    options: RunOptions,
    logger: logging.Logger,
    ran_once: set[str],
) -> list[OutcomeRecord]:
    """Evaluate one finding row and return the records it produced.

    ``ran_once`` holds the controls whose account-wide or scan-everything
    routine has already run in this pass.
    """
    if row.control_name not in selected_controls:
        logger.debug("Line %d: control %r not selected", row.line_number, row.control_name)
        return []

    control = mappings.get(row.control_name)
    if control is None:
        logger.warning("Control '%s' not found in control mappings", row.control_name)
        return []

    routine = ROUTINES[control.handler]
    ctx = RoutineContext(
        provider=provider,
        account=account,
        options=options,
        logger=logger,
        mode=control.mode or options.default_mode,
        control=control.name,
    )
    logger.info("Processing control: %s (line %d)", control.name, row.line_number)

    resource_id = ""
    if routine.scope is not Scope.ACCOUNT:
        resource_id = extract_resource_id(row.resource_reference, control.resource_pattern)

    if not resource_id:
        if routine.scope is Scope.RESOURCE:
            logger.warning("No valid resource ID found in: %s", row.resource_reference)
            return []
        if control.name in ran_once:
            logger.debug("Control %r already evaluated in this run", control.name)
            return []
        ran_once.add(control.name)
        return invoke_routine(routine, ctx, None)

    resource_type = control.resource_type or infer_resource_type(resource_id) or routine.resource_type
    if not validate_resource(provider, resource_id, resource_type, logger):
        logger.error("Resource validation failed: %s", resource_id)
        return [OutcomeRecord(
            category=OutcomeCategory.NOT_FOUND,
            resource_kind=resource_kind(resource_type),
            resource_id=resource_id,
            reason="Resource not found",
            control=control.name,
        )]

    logger.info("Executing %s for %s", control.handler, resource_id)
    return invoke_routine(routine, ctx, resource_id)


def process_findings(
    rows: Iterable[FindingRow],
    selected_controls: Iterable[str],
    mappings: dict[str, ControlSpec],
    provider: Any,
    account: AccountContext,
    options: Optional[RunOptions] = None,
    logger: Optional[logging.Logger] = None,
) -> RunResults:
    """Evaluate finding rows in order and collect their outcomes.

    Raises:
        UsageError: If no control names were selected.
    """
    selected = set(selected_controls)
    if not selected:
        raise UsageError("At least one control name is required")
    options = options or RunOptions()
    logger = logger or logging.getLogger(LOGGER_NAME)

    results = RunResults()
    ran_once: set[str] = set()
    for row in rows:
        results.extend(process_row(row, selected, mappings, provider, account, options, logger, ran_once))
    return results


def run_remediation(
    findings_path: str,
    selected_controls: Iterable[str],
    provider: Any,
    account: Optional[AccountContext] = None,
    mappings: Optional[dict[str, ControlSpec]] = None,
    options: Optional[RunOptions] = None,
    logger: Optional[logging.Logger] = None,
) -> RemediationReport:
    """Process a findings CSV end to end.

    Args:
        findings_path: CSV export of findings; the first line is a header.
        selected_controls: Control names to act on.
        provider: Object implementing the Boto3Provider methods.
        account: Resolved account context; fetched from the provider if None.
        mappings: Control mapping; the built-in one if None.
        options: Run options.
        logger: Logger instance.

    Returns:
        Completed RemediationReport.

    Raises:
        UsageError: If no control names were selected.
        ConfigurationError: If the findings file does not exist.
        ProviderSessionError: If the account identity cannot be resolved.
    """
    controls = list(selected_controls)
    if not controls:
        raise UsageError("At least one control name is required")
    options = options or RunOptions()
    logger = logger or logging.getLogger(LOGGER_NAME)
    if mappings is None:
        mappings = load_control_mappings()
    if account is None:
        account = establish_session(provider, logger)
    if not Path(findings_path).is_file():
        raise ConfigurationError(f"CSV file not found: {findings_path}")

    logger.info("Processing CSV file: %s", findings_path)
    logger.info("Selected controls: %s", ", ".join(controls))

    report = RemediationReport(
        findings_file=findings_path,
        controls=controls,
        mode=options.default_mode.value,
        account_id=account.account_id,
        region=account.region,
        start_time=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    )
    rows = read_findings(findings_path, options.layout, logger)
    report.results = process_findings(rows, controls, mappings, provider, account, options, logger)
    report.end_time = datetime.datetime.now(datetime.timezone.utc).isoformat()

    s = report.summary
    logger.info(
        "Final Summary: %d need fixes, %d compliant, %d not found, %d manual action.",
        s.need_fix, s.compliant, s.not_found, s.manual_action,
    )
    return report


def run(
    findings_path: str,
    selected_controls: Iterable[str],
    provider: Any,
    **kwargs: Any,
) -> Summary:
    """Process a findings CSV and return only the outcome counts."""
    return run_remediation(findings_path, selected_controls, provider, **kwargs).summary


# === Reporting ===

CATEGORY_STYLES = {
    "NEEDS_FIX": "bold yellow",
    "COMPLIANT": "green",
    "NOT_FOUND": "red",
    "MANUAL_ACTION": "bold magenta",
}


def report_console(report: RemediationReport, console: Optional[Console] = None) -> None:
    """Render the run summary and the outcome table to the terminal."""
    console = console or Console()
    s = report.summary
    mode_label = "🔴 REMEDIATE" if report.mode == Mode.REMEDIATE.value else "🔵 AUDIT"
    console.print(f"\n[bold blue]⚙  {TOOL_NAME}[/bold blue]  [dim]v{TOOL_VERSION}[/dim]")
    console.print(
        f"[bold]Mode:[/bold] {mode_label}  [bold]Account:[/bold] {report.account_id}  "
        f"[bold]Region:[/bold] {report.region}\n"
    )

    summary = (
        f"[yellow]Need fix: {s.need_fix}[/yellow]  "
        f"[green]Compliant: {s.compliant}[/green]  "
        f"[red]Not found: {s.not_found}[/red]  "
        f"[magenta]Manual action: {s.manual_action}[/magenta]"
    )
    console.print(Panel(summary, title="[yellow]Final Summary[/yellow]", expand=False))

    if not report.results.records:
        console.print("[dim]No selected findings were processed.[/dim]\n")
        return

    table = Table(
        title="Outcomes",
        box=box.ROUNDED,
        show_header=True,
        row_styles=["", "on grey15"],
    )
    table.add_column("Outcome", width=13)
    table.add_column("Kind", width=9)
    table.add_column("Resource", width=24)
    table.add_column("Reason")
    table.add_column("Action")
    table.add_column("Control")

    for record in report.results.records:
        table.add_row(
            Text(record.category.value, style=CATEGORY_STYLES.get(record.category.value, "white")),
            record.resource_kind,
            truncate(record.resource_id, 24),
            record.reason,
            record.action or "-",
            truncate(record.control, 40),
        )
    console.print(table)

    if report.mode == Mode.AUDIT.value and s.need_fix:
        console.print(
            "\n[dim]📌 Audit only. No changes were made. "
            "To fix, rerun with --mode remediate --confirm[/dim]\n"
        )


def report_json(report: RemediationReport, output_path: Optional[str]) -> None:
    """Export the run as structured JSON.

    Args:
        report: Completed report.
        output_path: File path to write, or None for stdout.
    """
    data = {
        "tool": TOOL_NAME,
        "version": TOOL_VERSION,
        "report": {
            "findings_file": report.findings_file,
            "controls": report.controls,
            "mode": report.mode,
            "account_id": report.account_id,
            "region": report.region,
            "start_time": report.start_time,
            "end_time": report.end_time,
            "summary": asdict(report.summary),
            "records": [asdict(r) for r in report.results.records],
        },
    }
    content = json.dumps(data, indent=2, default=str)

    if output_path:
        Path(output_path).write_text(content, encoding="utf-8")
        print(f"[+] JSON report saved to: {output_path}")
    else:
        print(content)


# === CLI ===

def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="csvremediation",
        usage="%(prog)s [options] <findings-file> <control-name> [control-name ...]",
        description=textwrap.dedent(f"""
            {TOOL_NAME} v{TOOL_VERSION}
            ─────────────────────────────────────────────────────────
            Check, and optionally fix, the AWS resources named in a
            findings CSV export for the selected controls.

            ⚠  AUDIT IS THE DEFAULT. Nothing is changed without
               --mode remediate --confirm (or a control whose mapping
               entry sets mode: remediate).
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Use --examples to see real-world usage examples.",
    )

    parser.add_argument("findings_file", nargs="?", help="CSV export of findings (first line is a header).")
    parser.add_argument("controls", nargs="*", help="Control names to process (exact match).")
    parser.add_argument(
        "--mappings", "-m",
        metavar="PATH",
        help="YAML control mapping file. Default: the built-in mapping.",
    )
    parser.add_argument(
        "--write-mappings",
        metavar="PATH",
        help="Write the built-in control mapping to PATH and exit.",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.AUDIT.value,
        help="Mode for controls whose mapping entry sets none. Default: audit.",
    )
    parser.add_argument(
        "--confirm",
        action="store_true",
        default=False,
        help="Confirm intent to modify resources. Required with --mode remediate.",
    )
    parser.add_argument(
        "--layout",
        choices=sorted(COLUMN_LAYOUTS),
        default=DEFAULT_LAYOUT,
        help=f"Column layout of the findings CSV. Default: {DEFAULT_LAYOUT}.",
    )
    parser.add_argument("--control-column", type=int, metavar="N", help="Override the control-name column (0-based).")
    parser.add_argument("--resource-column", type=int, metavar="N", help="Override the resource column (0-based).")
    parser.add_argument(
        "--overbroad-action",
        default=DEFAULT_OVERBROAD_ACTION,
        metavar="ACTION",
        help=f"IAM action instance roles must not be granted. Default: {DEFAULT_OVERBROAD_ACTION}.",
    )
    parser.add_argument("--backup-plan-id", metavar="ID", help="Backup plan for new backup selections.")
    parser.add_argument("--backup-role-arn", metavar="ARN", help="IAM role AWS Backup assumes for new selections.")
    parser.add_argument(
        "--auto-stop-non-vpc-instances",
        action="store_true",
        default=False,
        help="In remediate mode, stop instances that are not in a VPC.",
    )
    parser.add_argument("--profile", metavar="NAME", help="AWS profile name.")
    parser.add_argument("--region", metavar="REGION", help="AWS region.")
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        metavar="SECONDS",
        help=f"API request timeout in seconds (5-300). Default: {DEFAULT_TIMEOUT}.",
    )
    parser.add_argument(
        "--output", "-o",
        choices=["console", "json"],
        default="console",
        help="Output format. Default: console.",
    )
    parser.add_argument("--output-file", metavar="PATH", help="File path for JSON output. Default: stdout.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable INFO-level logging to stderr.")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG-level logging (very verbose).")
    parser.add_argument("--examples", action="store_true", help="Print real-world usage examples and exit.")
    parser.add_argument("--version", action="version", version=f"{TOOL_NAME} v{TOOL_VERSION}")

    return parser


def validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Validate argument combinations.

    Raises:
        SystemExit: Via parser.error on invalid combinations.
    """
    if not args.findings_file or not args.controls:
        parser.error("a findings file and at least one control name are required")
    if args.mode == Mode.REMEDIATE.value and not args.confirm:
        parser.error("--mode remediate requires --confirm. Review the audit output first.")
    if args.timeout < 5 or args.timeout > 300:
        parser.error("--timeout must be between 5 and 300 seconds.")
    for name in ("control_column", "resource_column"):
        value = getattr(args, name)
        if value is not None and value < 0:
            parser.error(f"--{name.replace('_', '-')} must be 0 or greater.")


def options_from_args(args: argparse.Namespace) -> RunOptions:
    layout = COLUMN_LAYOUTS[args.layout]
    if args.control_column is not None or args.resource_column is not None:
        layout = ColumnLayout(
            control=layout.control if args.control_column is None else args.control_column,
            resource=layout.resource if args.resource_column is None else args.resource_column,
            service=layout.service,
        )
    return RunOptions(
        default_mode=Mode(args.mode),
        layout=layout,
        overbroad_action=args.overbroad_action,
        backup_plan_id=args.backup_plan_id,
        backup_role_arn=args.backup_role_arn,
        auto_stop_non_vpc_instances=args.auto_stop_non_vpc_instances,
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point: parse arguments, run the controls, output results."""
    parser = build_parser()
    # controls may follow options: f.csv A --mode audit B
    args = parser.parse_intermixed_args(argv)

    if args.examples:
        print(EXAMPLES_TEXT)
        sys.exit(EXIT_OK)

    if args.write_mappings:
        Path(args.write_mappings).write_text(DEFAULT_CONTROL_MAPPINGS_YAML, encoding="utf-8")
        print(f"[+] Control mappings written to: {args.write_mappings}")
        sys.exit(EXIT_OK)

    validate_args(parser, args)
    logger = setup_logging(verbose=args.verbose, debug=args.debug)
    options = options_from_args(args)

    if options.default_mode is Mode.REMEDIATE:
        print(REMEDIATE_WARNING, file=sys.stderr)

    try:
        mappings = load_control_mappings(args.mappings)
    except MappingError as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_CONFIG)

    try:
        provider = build_provider(profile=args.profile, region=args.region, timeout=args.timeout)
        account = establish_session(provider, logger)
    except ProviderSessionError as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_SESSION)

    try:
        report = run_remediation(
            args.findings_file,
            args.controls,
            provider,
            account=account,
            mappings=mappings,
            options=options,
            logger=logger,
        )
    except UsageError as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_USAGE)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_CONFIG)

    if args.output == "json":
        report_json(report, args.output_file)
    else:
        report_console(report)

    s = report.summary
    # keep stdout parseable when it carries the JSON report
    summary_stream = sys.stderr if args.output == "json" and not args.output_file else sys.stdout
    print(
        f"Final Summary: {s.need_fix} need fixes, {s.compliant} compliant, "
        f"{s.not_found} not found, {s.manual_action} manual action.",
        file=summary_stream,
    )
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
