from __future__ import annotations

import json
import urllib.request
from pathlib import Path

from typer.testing import CliRunner

from safescan.cli import app

runner = CliRunner()


class _FakeResponse:
    def __init__(self, payload: object) -> None:
        self.payload = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self.payload

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *args: object) -> None:
        return None


def _isolate(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SAFESCAN_HOME", str(tmp_path / ".safescan"))
    monkeypatch.setenv("SAFESCAN_VOTER_ID", "tester")
    monkeypatch.setenv("SAFESCAN_VT_API_KEY", "${VIRUS_TOTAL_API_KEY}")
    monkeypatch.delenv("VIRUSTOTAL_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "safescan" in result.stdout


def test_scan_without_credential_is_unknown(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    result = runner.invoke(app, ["scan", "https://example.com", "--fail-on", "never"])
    assert result.exit_code == 0
    assert "Verdict" in result.stdout
    assert "UNKNOWN" in result.stdout


def test_scan_fail_on_unknown(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    result = runner.invoke(app, ["scan", "https://example.com", "--fail-on", "unknown"])
    assert result.exit_code == 1


def test_scan_json_with_reputation(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("SAFESCAN_VT_API_KEY", "key")
    report = {"data": {"id": "r1", "attributes": {"last_analysis_stats": {"harmless": 55, "malicious": 15}}}}
    monkeypatch.setattr(urllib.request, "urlopen", lambda req, timeout=10: _FakeResponse(report))

    result = runner.invoke(app, ["scan", "https://bad.example", "--format", "json"])
    assert result.exit_code == 1
    doc = json.loads(result.stdout)
    assert doc["status"] == "completed"
    assert doc["identifier"] == "https://bad.example/"
    assert doc["safety_status"] == "unsafe"
    assert doc["assessment"]["reputation"]["malicious_count"] == 15


def test_second_scan_reports_duplicate(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    runner.invoke(app, ["scan", "https://example.com", "--fail-on", "never"])
    result = runner.invoke(app, ["scan", "HTTPS://EXAMPLE.COM/", "--format", "json", "--fail-on", "never"])
    assert json.loads(result.stdout)["status"] == "duplicate"

    listing = runner.invoke(app, ["history", "list", "--format", "json"])
    assert listing.exit_code == 0
    assert len(json.loads(listing.stdout)) == 1


def test_invalid_inputs_exit_2(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    assert runner.invoke(app, ["scan", "   "]).exit_code == 2
    assert runner.invoke(app, ["scan", "https://x.example", "--format", "xml"]).exit_code == 2
    assert runner.invoke(app, ["scan", "https://x.example", "--fail-on", "warn"]).exit_code == 2
    bad_profile = runner.invoke(app, ["scan", "https://x.example", "--profile", "nope"])
    assert bad_profile.exit_code == 2
    assert "Invalid --profile" in bad_profile.stdout


def test_vote_and_retract(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    voted = runner.invoke(app, ["vote", "https://example.com", "unsafe"])
    assert voted.exit_code == 0
    assert "Recorded unsafe vote" in voted.stdout
    assert "0 safe / 1 unsafe" in voted.stdout

    other = runner.invoke(app, ["vote", "https://example.com", "safe", "--voter-id", "bob"])
    assert "1 safe / 1 unsafe" in other.stdout

    retracted = runner.invoke(app, ["retract", "https://example.com"])
    assert retracted.exit_code == 0
    assert "1 safe / 0 unsafe" in retracted.stdout


def test_vote_rate_limit_exits_1(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    for i in range(3):
        assert runner.invoke(app, ["vote", f"https://{i}.example", "safe"]).exit_code == 0
    result = runner.invoke(app, ["vote", "https://3.example", "safe"])
    assert result.exit_code == 1
    assert "Vote rejected" in result.stdout
    assert "rate_limited" in result.stdout


def test_history_clear(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    runner.invoke(app, ["scan", "https://example.com", "--fail-on", "never"])
    result = runner.invoke(app, ["history", "clear"])
    assert "Removed 1 history entries" in result.stdout
    listing = runner.invoke(app, ["history", "list"])
    assert "No scans recorded" in listing.stdout


def test_policy_commands(tmp_path: Path) -> None:
    shown = runner.invoke(app, ["policy", "show", "--profile", "strict"])
    assert shown.exit_code == 0
    assert "max_votes_per_window" in shown.stdout

    path = tmp_path / "p.yaml"
    path.write_text("name: mine\ndescription: custom\n", encoding="utf-8")
    validated = runner.invoke(app, ["policy", "validate", str(path)])
    assert validated.exit_code == 0
    assert "Valid policy" in validated.stdout
