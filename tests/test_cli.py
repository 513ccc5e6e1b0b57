# tests/test_cli.py
"""Command-line entry point: argument checks, exit codes, output formats."""

import json

import pytest

import csvremediation
from conftest import client_error, security_hub_row
from csvremediation import EXIT_CONFIG, EXIT_OK, EXIT_SESSION, EXIT_USAGE, main

VOLUME_ENCRYPTION = "Attached EBS volumes should have encryption enabled"
ENCRYPTION_DEFAULT = "EBS encryption by default should be enabled"


@pytest.fixture(autouse=True)
def patched_provider(monkeypatch, provider):
    seen = {}

    def fake_build_provider(profile=None, region=None, timeout=None):
        seen.update(profile=profile, region=region, timeout=timeout)
        return provider

    monkeypatch.setattr(csvremediation, "build_provider", fake_build_provider)
    return seen


def exit_code(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_missing_controls_is_usage_error(write_findings):
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "vol-1")])
    assert exit_code([path]) == EXIT_USAGE


def test_remediate_requires_confirm(write_findings, provider):
    path = write_findings([security_hub_row(ENCRYPTION_DEFAULT, "")])
    assert exit_code([path, ENCRYPTION_DEFAULT, "--mode", "remediate"]) == EXIT_USAGE
    assert provider.calls == []


def test_timeout_out_of_range(write_findings):
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "vol-1")])
    assert exit_code([path, VOLUME_ENCRYPTION, "--timeout", "1"]) == EXIT_USAGE


def test_examples(capsys):
    assert exit_code(["--examples"]) == EXIT_OK
    assert "Real-World Usage Examples" in capsys.readouterr().out


def test_write_mappings(tmp_path):
    target = tmp_path / "control_mappings.yaml"
    assert exit_code(["--write-mappings", str(target)]) == EXIT_OK
    assert "ensure_private_snapshots" in target.read_text(encoding="utf-8")


def test_session_failure_exits_before_rows(write_findings, provider):
    provider.fail_on["get_account_identity"] = client_error("InvalidClientTokenId", "GetCallerIdentity")
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "vol-1")])
    assert exit_code([path, VOLUME_ENCRYPTION]) == EXIT_SESSION
    assert provider.calls == [("get_account_identity",)]


def test_missing_mapping_file(write_findings, tmp_path):
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "vol-1")])
    assert exit_code([path, VOLUME_ENCRYPTION, "--mappings", str(tmp_path / "nope.yaml")]) == EXIT_CONFIG


def test_missing_findings_file(tmp_path):
    assert exit_code([str(tmp_path / "nope.csv"), VOLUME_ENCRYPTION]) == EXIT_CONFIG


def test_console_run(write_findings, provider, capsys, patched_provider):
    provider.add_volume("vol-0abc123", Encrypted=False)
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "arn:aws:ec2:us-east-1:1:volume/vol-0abc123")])

    assert exit_code([path, VOLUME_ENCRYPTION, "--region", "eu-west-1", "--timeout", "10"]) == EXIT_OK

    out = capsys.readouterr().out
    assert "Final Summary: 1 need fixes, 0 compliant, 0 not found, 0 manual action." in out
    assert "vol-0abc123" in out
    assert patched_provider == {"profile": None, "region": "eu-west-1", "timeout": 10}
    assert provider.mutations == []


def test_json_report_file(write_findings, provider, tmp_path):
    provider.add_volume("vol-0abc123", Encrypted=True)
    path = write_findings([
        security_hub_row(VOLUME_ENCRYPTION, "volume/vol-0abc123"),
        security_hub_row(VOLUME_ENCRYPTION, "volume/vol-0gone"),
    ])
    report_path = tmp_path / "report.json"

    code = exit_code([path, VOLUME_ENCRYPTION, "--output", "json", "--output-file", str(report_path)])

    assert code == EXIT_OK
    data = json.loads(report_path.read_text(encoding="utf-8"))
    report = data["report"]
    assert report["summary"] == {"need_fix": 0, "compliant": 1, "not_found": 1, "manual_action": 0}
    assert report["account_id"] == "123456789012"
    assert [r["category"] for r in report["records"]] == ["NOT_FOUND", "COMPLIANT"]


def test_remediate_with_confirm(write_findings, provider):
    path = write_findings([security_hub_row(ENCRYPTION_DEFAULT, "AWS::::Account:123456789012")])
    assert exit_code([path, ENCRYPTION_DEFAULT, "--mode", "remediate", "--confirm"]) == EXIT_OK
    assert provider.default_encryption is True


def test_column_overrides(write_findings, provider):
    provider.add_volume("vol-0abc123", Encrypted=True)
    path = write_findings([[VOLUME_ENCRYPTION, "vol-0abc123"]], header=["control", "resource"])
    assert exit_code([
        path, VOLUME_ENCRYPTION, "--control-column", "0", "--resource-column", "1",
    ]) == EXIT_OK
    assert provider.called("describe_volume")


def test_json_on_stdout_stays_parseable(write_findings, provider, capsys):
    provider.add_volume("vol-0abc123", Encrypted=True)
    path = write_findings([security_hub_row(VOLUME_ENCRYPTION, "volume/vol-0abc123")])

    assert exit_code([path, VOLUME_ENCRYPTION, "--output", "json"]) == EXIT_OK

    captured = capsys.readouterr()
    data = json.loads(captured.out)
    assert data["report"]["summary"]["compliant"] == 1
    assert "Final Summary: 0 need fixes, 1 compliant" in captured.err


def test_controls_after_options(write_findings, provider):
    provider.add_volume("vol-0abc123", Encrypted=True)
    path = write_findings([
        security_hub_row(VOLUME_ENCRYPTION, "volume/vol-0abc123"),
        security_hub_row(ENCRYPTION_DEFAULT, ""),
    ])

    assert exit_code([path, VOLUME_ENCRYPTION, "--mode", "audit", ENCRYPTION_DEFAULT]) == EXIT_OK

    assert provider.called("describe_volume")
    assert provider.called("get_default_encryption_flag")


def test_undecodable_findings_file(tmp_path, provider):
    path = tmp_path / "latin1.csv"
    path.write_bytes(
        b"c0,c1,c2,c3,c4,c5,c6,c7,c8\n"
        b"EBS,x,HIGH,FAILED,Attached EBS volumes should have encryption enabled,,,,volume/vol-1\n"
        b"EBS,caf\xe9,HIGH,FAILED,Attached EBS volumes should have encryption enabled,,,,volume/vol-2\n"
    )
    assert exit_code([str(path), VOLUME_ENCRYPTION]) == EXIT_CONFIG
