import os
import pytest
import yaml
from dataclasses import FrozenInstanceError
from pathlib import Path
from keyrack.config import (
    DEFAULT_ROLES,
    DEFAULT_SERVICES,
    KeyrackConfig,
    ObjectStoreConfig,
    get_keyrack_home,
    load_config,
)
from keyrack.errors import ConfigError


def test_get_keyrack_home_default(monkeypatch):
    monkeypatch.delenv("KEYRACK_HOME", raising=False)
    home = get_keyrack_home()
    assert home == Path("~/.config/keyrack").expanduser()


def test_get_keyrack_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("KEYRACK_HOME", str(custom_home))
    assert get_keyrack_home() == custom_home


def test_load_config_missing_file_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    cfg = load_config()
    assert isinstance(cfg, KeyrackConfig)
    assert cfg.concurrency == 20
    assert cfg.max_retry_attempts == 3
    assert cfg.key_ceiling == 10
    assert cfg.service_account_name == "vertex-admin"
    assert cfg.required_services == DEFAULT_SERVICES
    assert cfg.roles == DEFAULT_ROLES
    assert cfg.api_key_service == "generativelanguage.googleapis.com"
    assert cfg.max_projects_per_account == 3


def test_load_config_valid(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    config_data = {
        "service_account_name": "ci-admin",
        "key_dir": "/tmp/keys",
        "concurrency": 5,
        "delete_oldest_key": "always",
        "roles": "roles/viewer, roles/editor",
        "object_store": {
            "endpoint": "https://s3.example.com",
            "access_key": "AK",
            "secret_key": "SK",
            "bucket": "creds",
        },
    }
    (tmp_path / "config.yaml").write_text(yaml.dump(config_data))

    cfg = load_config()
    assert cfg.service_account_name == "ci-admin"
    assert cfg.key_dir == Path("/tmp/keys")
    assert cfg.concurrency == 5
    assert cfg.delete_oldest_key == "always"
    assert cfg.roles == ("roles/viewer", "roles/editor")
    assert cfg.object_store.is_configured
    assert cfg.object_store.bucket == "creds"


def test_load_config_explicit_path(tmp_path):
    path = tmp_path / "other.yaml"
    path.write_text(yaml.dump({"key_ceiling": 5}))
    assert load_config(path).key_ceiling == 5


def test_load_config_empty_file(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("")
    assert load_config().concurrency == 20


def test_load_config_unknown_key(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("existing: true")
    with pytest.raises(ConfigError, match="Unknown config keys: existing"):
        load_config()


def test_load_config_unknown_object_store_key(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({"object_store": {"region": "x"}}))
    with pytest.raises(ConfigError, match="Unknown object_store keys"):
        load_config()


def test_load_config_invalid_yaml(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("concurrency: [1, 2\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config()


def test_load_config_non_mapping(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_config()


def test_env_overrides_take_precedence(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({"concurrency": 5, "max_retry_attempts": 2}))
    monkeypatch.setenv("CONCURRENCY", "7")
    monkeypatch.setenv("MAX_RETRY", "4")
    monkeypatch.setenv("KEY_DIR", "/srv/keys")

    cfg = load_config()
    assert cfg.concurrency == 7
    assert cfg.max_retry_attempts == 4
    assert cfg.key_dir == Path("/srv/keys")


def test_invalid_env_value(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    monkeypatch.setenv("CONCURRENCY", "many")
    with pytest.raises(ConfigError, match="CONCURRENCY"):
        load_config()


def test_load_config_with_env_file(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    # load_dotenv writes to os.environ; keep it scoped to this test
    monkeypatch.setattr(os, "environ", os.environ.copy())

    env_file = tmp_path / ".env.test"
    env_file.write_text("BILLING_ACCOUNT=0000-1111-2222\n")
    (tmp_path / "config.yaml").write_text(yaml.dump({"env_file": str(env_file)}))

    cfg = load_config()
    assert cfg.billing_account == "0000-1111-2222"


def test_validation_rejects_bad_values(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({"concurrency": 0}))
    with pytest.raises(ConfigError, match="concurrency"):
        load_config()


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"max_retry_attempts": 0}, "max_retry_attempts"),
        ({"key_ceiling": 0}, "key_ceiling"),
        ({"delete_oldest_key": "sometimes"}, "delete_oldest_key"),
        ({"service_account_name": ""}, "service_account_name"),
    ],
)
def test_with_overrides_validates(overrides, message):
    with pytest.raises(ConfigError, match=message):
        KeyrackConfig().with_overrides(**overrides)


def test_with_overrides_skips_none():
    base = KeyrackConfig(concurrency=3)
    updated = base.with_overrides(concurrency=None, billing_account="0000")
    assert updated.concurrency == 3
    assert updated.billing_account == "0000"
    assert base.billing_account == ""


def test_config_is_immutable():
    cfg = KeyrackConfig()
    with pytest.raises(FrozenInstanceError):
        cfg.concurrency = 99


def test_comma_key_path_uses_run_username():
    cfg = KeyrackConfig(run_username="momo1a2b3456")
    assert cfg.comma_key_path == Path("comma_separated_keys_momo1a2b3456.txt")


def test_log_file_path_default(monkeypatch, tmp_path):
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path))
    assert KeyrackConfig().get_log_file_path() == tmp_path / "logs" / "keyrack.log"


class TestObjectStoreConfig:
    def test_not_configured_without_bucket(self):
        store = ObjectStoreConfig(endpoint="https://s3", access_key="a", secret_key="s")
        assert not store.is_configured

    def test_default_directory_is_today(self):
        store = ObjectStoreConfig("https://s3", "a", "s", "b").with_default_directory()
        assert len(store.directory) == 8
        assert store.directory.isdigit()

    def test_explicit_directory_kept(self):
        store = ObjectStoreConfig("https://s3", "a", "s", "b", "batch-1")
        assert store.with_default_directory().directory == "batch-1"

    def test_repr_hides_credentials(self):
        store = ObjectStoreConfig("https://s3", "AKIAEXAMPLE", "SECRETVALUE", "b")
        text = repr(store)
        assert "AKIAEXAMPLE" not in text
        assert "SECRETVALUE" not in text
