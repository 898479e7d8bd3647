import pytest

from pgupgrader.errors import ValidationError
from pgupgrader.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".pgupgrader.yml"
    config_file.write_text(
        "data_dir: /srv/postgres\nfrom_version: '13'\nto_version: '16'\nready_retries: 5\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["data_dir"] == "/srv/postgres"
    assert loaded["from_version"] == "13"
    assert loaded["ready_retries"] == 5


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".pgupgrader.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(ValidationError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_mapping_root(tmp_path):
    config_file = tmp_path / ".pgupgrader.yml"
    config_file.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="YAML mapping"):
        ConfigLoader().load(str(config_file))


def test_config_loader_missing_file_is_an_error(tmp_path):
    with pytest.raises(ValidationError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


def test_config_loader_reads_numeric_versions_as_strings(tmp_path):
    config_file = tmp_path / ".pgupgrader.yml"
    config_file.write_text("from_version: 13\nto_version: 16.4\natomic_restore: true\n", encoding="utf-8")

    loaded = ConfigLoader().load(str(config_file))

    assert loaded == {"from_version": "13", "to_version": "16.4", "atomic_restore": True}


@pytest.mark.parametrize(
    "content",
    ["dry_run: 'yes please'\n", "ready_retries: many\n", "data_dir: [a, b]\n", "ready_interval: true\n"],
)
def test_config_loader_rejects_values_of_the_wrong_type(tmp_path, content):
    config_file = tmp_path / ".pgupgrader.yml"
    config_file.write_text(content, encoding="utf-8")

    with pytest.raises(ValidationError, match="Invalid value for"):
        ConfigLoader().load(str(config_file))


def test_config_loader_maps_env_file_credentials(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# credentials\nPOSTGRES_USER=admin\nexport POSTGRES_PASSWORD=\"s3 cret\"\nPOSTGRES_DB=\nOTHER=ignored\n",
        encoding="utf-8",
    )

    loaded = ConfigLoader().load_env_file(str(env_file))

    assert loaded == {"user": "admin", "password": "s3 cret"}


def test_config_loader_env_file_is_optional():
    assert ConfigLoader().load_env_file(None) == {}
