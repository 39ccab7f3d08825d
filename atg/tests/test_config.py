# atg/tests/test_config.py
import pytest
from pydantic import ValidationError

from atg.config import ReloadableSettings, Settings, _load_settings


def test_defaults():
    s = Settings()
    assert s.require_registration
    assert s.sync_policy == "arrival"
    assert s.remote_domain_list() == ()
    assert s.admin_principal_set() == frozenset({"admin"})


def test_unknown_field_rejected():
    with pytest.raises(ValidationError):
        Settings(not_a_knob=1)


def test_bad_sync_policy_rejected():
    with pytest.raises(ValidationError):
        Settings(sync_policy="newest")


def test_config_hash_tracks_policy():
    assert Settings().config_hash() == Settings().config_hash()
    assert Settings().config_hash() != Settings(min_score=10).config_hash()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("ATG_MIN_SCORE", "40")
    monkeypatch.setenv("ATG_REMOTE_DOMAINS", "a, b")
    monkeypatch.setenv("ATG_POW_DIFFICULTY", "999")
    s = _load_settings()
    assert s.min_score == 40
    assert s.remote_domain_list() == ("a", "b")
    # out of bounds: ignored
    assert s.pow_difficulty == 0


def test_yaml_overlay(tmp_path, monkeypatch):
    p = tmp_path / "atg.yaml"
    p.write_text("base_price: 0.5\nnetwork: base\n")
    monkeypatch.setenv("ATG_CONFIG_PATH", str(p))
    monkeypatch.setenv("ATG_NETWORK", "base-mainnet")
    s = _load_settings()
    assert s.base_price == 0.5
    assert s.network == "base-mainnet"


def test_tighten_only(monkeypatch):
    monkeypatch.delenv("ATG_BREAK_GLASS_TOKEN", raising=False)
    rs = ReloadableSettings(Settings(min_score=40, require_stake=True))
    s = rs.set(min_score=10, require_stake=False, pow_difficulty=4, base_price=0.2)
    assert s.min_score == 40
    assert s.require_stake
    assert s.pow_difficulty == 4
    assert s.base_price == 0.2
    assert rs.set(min_score=60).min_score == 60


def test_break_glass_relaxes(monkeypatch):
    monkeypatch.setenv("ATG_BREAK_GLASS_TOKEN", "incident-42")
    rs = ReloadableSettings(Settings(min_score=40))
    assert rs.set(min_score=10).min_score == 10


def test_immutable_fields_kept(monkeypatch):
    monkeypatch.delenv("ATG_BREAK_GLASS_TOKEN", raising=False)
    rs = ReloadableSettings(Settings())
    assert rs.set(ledger_dsn="sqlite:///x.db").ledger_dsn == "memory://"


def test_runtime_override_can_be_disabled(monkeypatch):
    monkeypatch.delenv("ATG_BREAK_GLASS_TOKEN", raising=False)
    rs = ReloadableSettings(Settings(allow_runtime_override=False))
    assert rs.set(min_score=90).min_score == 0


def test_refresh_reads_env(monkeypatch):
    monkeypatch.delenv("ATG_BREAK_GLASS_TOKEN", raising=False)
    rs = ReloadableSettings(Settings())
    monkeypatch.setenv("ATG_MIN_SCORE", "30")
    assert rs.refresh().min_score == 30
