from __future__ import annotations

from pathlib import Path

from safescan.config import data_dir, load_dotenv, resolve_api_key, resolve_voter_id


def test_data_dir_defaults_to_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("SAFESCAN_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert data_dir() == tmp_path / ".safescan"
    monkeypatch.setenv("SAFESCAN_HOME", str(tmp_path / "alt"))
    assert data_dir() == tmp_path / "alt"


def test_api_key_placeholder_counts_as_missing(monkeypatch) -> None:
    monkeypatch.delenv("SAFESCAN_VT_API_KEY", raising=False)
    monkeypatch.setenv("VIRUSTOTAL_API_KEY", "${VIRUS_TOTAL_API_KEY}")
    assert resolve_api_key() is None
    monkeypatch.setenv("VIRUSTOTAL_API_KEY", "real")
    assert resolve_api_key() == "real"
    monkeypatch.setenv("SAFESCAN_VT_API_KEY", "preferred")
    assert resolve_api_key() == "preferred"


def test_blank_api_key_is_missing(monkeypatch) -> None:
    monkeypatch.setenv("SAFESCAN_VT_API_KEY", "   ")
    monkeypatch.delenv("VIRUSTOTAL_API_KEY", raising=False)
    assert resolve_api_key() is None


def test_voter_id_resolution(monkeypatch) -> None:
    monkeypatch.delenv("SAFESCAN_VOTER_ID", raising=False)
    assert resolve_voter_id() == "local"
    monkeypatch.setenv("SAFESCAN_VOTER_ID", "env-voter")
    assert resolve_voter_id() == "env-voter"
    assert resolve_voter_id(" explicit ") == "explicit"


def test_load_dotenv_does_not_override(monkeypatch, tmp_path: Path) -> None:
    env = tmp_path / ".env"
    env.write_text("# comment\nSAFESCAN_VOTER_ID='from-file'\nSAFESCAN_VT_API_KEY=abc\n", encoding="utf-8")
    monkeypatch.setenv("SAFESCAN_VOTER_ID", "unset")
    monkeypatch.delenv("SAFESCAN_VOTER_ID")
    monkeypatch.setenv("SAFESCAN_VT_API_KEY", "already-set")
    load_dotenv(env)
    assert resolve_voter_id() == "from-file"
    assert resolve_api_key() == "already-set"
