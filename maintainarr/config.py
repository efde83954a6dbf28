"""Configuration: config.yaml + SECTION__KEY environment overrides."""
import os
from pathlib import Path
from typing import Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlexConfig(BaseModel):
    url: str
    token: str
    page_size: int = Field(default=200, ge=1)


class RadarrConfig(BaseModel):
    url: str
    api_key: str
    add_import_exclusion: bool = False


class SonarrConfig(BaseModel):
    url: str
    api_key: str
    add_import_list_exclusion: bool = False


class MaintenanceConfig(BaseModel):
    scan_deadline_seconds: int = Field(default=3600, ge=1)
    deletion_concurrency: int = Field(default=4, ge=1)
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    use_bulk_delete: bool = True
    delete_files: bool = True


class SchedulerConfig(BaseModel):
    enabled: bool = True
    timezone: str = "UTC"
    reaper_interval_minutes: int = Field(default=15, ge=1)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value


class AppConfig(BaseModel):
    data_dir: str = "/data"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level


SECTIONS = {
    "plex": PlexConfig,
    "radarr": RadarrConfig,
    "sonarr": SonarrConfig,
    "maintenance": MaintenanceConfig,
    "scheduler": SchedulerConfig,
    "app": AppConfig,
}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Dict[str, str]]:
    """SECTION__KEY variables, for every field a section declares.

    A variable may also define a section that the YAML file leaves out
    (e.g. RADARR__URL + RADARR__API_KEY).
    """
    overrides: Dict[str, Dict[str, str]] = {}
    for section, model in SECTIONS.items():
        for field_name in model.model_fields:
            value = environ.get(f"{section.upper()}__{field_name.upper()}")
            if value:
                overrides.setdefault(section, {})[field_name] = value
    return overrides


class Config(BaseSettings):
    plex: Optional[PlexConfig] = None
    radarr: Optional[RadarrConfig] = None
    sonarr: Optional[SonarrConfig] = None
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__")

    @classmethod
    def load_from_yaml(cls, yaml_path: str, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Charge le YAML puis applique les variables d'environnement SECTION__KEY."""
        config_path = Path(yaml_path)
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {yaml_path}\n"
                f"Copy config.example.yaml to {yaml_path} and fill in your Plex/Radarr/Sonarr settings"
            )

        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{yaml_path}: top level must be a mapping")

        for section, values in _env_overrides(os.environ if environ is None else environ).items():
            current = data.get(section)
            data[section] = {**(current if isinstance(current, dict) else {}), **values}

        return cls(**data)


# Instance globale, initialisée par main.create_app (ou les tests)
config: Optional[Config] = None


def get_config() -> Config:
    if config is None:
        raise RuntimeError("Config not initialized. Call init_config() first.")
    return config


def set_config(new_config: Config) -> Config:
    global config
    config = new_config
    return config


def init_config(config_path: str = "/config/config.yaml") -> Config:
    return set_config(Config.load_from_yaml(config_path))
