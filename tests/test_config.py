from __future__ import annotations

import pytest
from pydantic import ValidationError

from maintainarr.config import Config

YAML = """
radarr:
  url: "http://radarr:7878"
  api_key: "from-yaml"
maintenance:
  deletion_concurrency: 8
"""


def write_config(tmp_path, text=YAML):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_yaml_with_defaults(tmp_path):
    config = Config.load_from_yaml(write_config(tmp_path), environ={})

    assert config.radarr.api_key == "from-yaml"
    assert config.radarr.add_import_exclusion is False
    assert config.maintenance.deletion_concurrency == 8
    assert config.maintenance.scan_deadline_seconds == 3600
    assert config.sonarr is None
    assert config.plex is None


def test_env_overrides_yaml_and_fills_missing_sections(tmp_path):
    environ = {
        "RADARR__API_KEY": "from-env",
        "SONARR__URL": "http://sonarr:8989",
        "SONARR__API_KEY": "sonarr-env",
        "MAINTENANCE__USE_BULK_DELETE": "false",
        "APP__LOG_LEVEL": "debug",
    }

    config = Config.load_from_yaml(write_config(tmp_path), environ=environ)

    assert config.radarr.api_key == "from-env"
    assert config.radarr.url == "http://radarr:7878"
    assert config.sonarr.api_key == "sonarr-env"
    assert config.maintenance.use_bulk_delete is False
    assert config.maintenance.deletion_concurrency == 8
    assert config.app.log_level == "DEBUG"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.load_from_yaml(str(tmp_path / "nope.yaml"), environ={})


def test_invalid_values_are_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Config.load_from_yaml(write_config(tmp_path, "scheduler:\n  timezone: Mars/Olympus\n"), environ={})
    with pytest.raises(ValidationError):
        Config.load_from_yaml(write_config(tmp_path, "maintenance:\n  deletion_concurrency: 0\n"), environ={})
