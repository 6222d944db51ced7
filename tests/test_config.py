from pathlib import Path

import pytest

from dcd.config import DcdConfig, configure_logging, load_config, merge_env_overrides

DEFAULTS = Path(__file__).parent.parent / "config" / "dcd.defaults.yml"


def test_load_config_without_path_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    cfg = load_config()

    assert isinstance(cfg, DcdConfig)
    assert cfg.default_user == "root"
    assert cfg.remote_base_dir == "/opt"
    assert cfg.ssh.strict_host_keys is True
    assert cfg.sync.prune_orphans is False
    assert cfg.health.timeout_sec == 300.0


def test_load_config_without_path_reads_default_file(monkeypatch, tmp_path):
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "dcd.defaults.yml").write_text(
        "default_user: deploy\nhealth:\n  timeout_sec: 120\n", encoding="utf-8"
    )
    monkeypatch.chdir(tmp_path)

    cfg = load_config()

    assert cfg.default_user == "deploy"
    assert cfg.health.timeout_sec == 120.0
    assert cfg.ssh.keepalive_sec == 15


def test_shipped_defaults_match_builtin_defaults():
    assert load_config(DEFAULTS) == DcdConfig()


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "dcd.yml"
    path.write_text(
        "default_user: deploy\n"
        "ssh:\n  reconnect_attempts: 2\n  strict_host_keys: false\n"
        "sync:\n  upload_concurrency: 8\n",
        encoding="utf-8",
    )

    cfg = load_config(path)

    assert cfg.default_user == "deploy"
    assert cfg.ssh.reconnect_attempts == 2
    assert cfg.ssh.strict_host_keys is False
    assert cfg.sync.upload_concurrency == 8
    assert cfg.ssh.keepalive_sec == 15


def test_missing_explicit_path_is_an_error(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yml")


def test_env_overrides(monkeypatch, tmp_path):
    source = tmp_path / "dcd.yml"
    source.write_text("remote_base_dir: /srv\n", encoding="utf-8")

    monkeypatch.setenv("DCD_UPLOAD_CONCURRENCY", "2")
    monkeypatch.setenv("DCD_HEALTH_TIMEOUT_SEC", "42.5")
    monkeypatch.setenv("DCD_STRICT_HOST_KEYS", "no")
    monkeypatch.setenv("DCD_IDENTITY_FILE", "~/.ssh/deploy_key")

    cfg = load_config(source)

    assert cfg.remote_base_dir == "/srv"
    assert cfg.sync.upload_concurrency == 2
    assert cfg.health.timeout_sec == 42.5
    assert cfg.ssh.strict_host_keys is False
    assert cfg.ssh.identity_file == "~/.ssh/deploy_key"


def test_env_override_into_null_section(monkeypatch):
    monkeypatch.setenv("DCD_PRUNE_ORPHANS", "true")

    merged = merge_env_overrides({"sync": None})

    assert merged["sync"] == {"prune_orphans": True}


def test_upload_concurrency_never_below_one():
    cfg = DcdConfig.from_dict({"sync": {"upload_concurrency": 0}})
    assert cfg.sync.upload_concurrency == 1


def test_configure_logging_quiets_paramiko():
    import logging

    configure_logging(0)

    assert logging.getLogger("paramiko").level == logging.WARNING
