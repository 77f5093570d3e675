from dotenv import load_dotenv
load_dotenv()

import os
from typing import Any, Dict, Literal, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError


class ConfigError(RuntimeError):
    """Fatal startup configuration problem."""
    pass


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    # ArcGIS FeatureServer root (REQUIRED), e.g. .../FeatureServer
    feature_url: HttpUrl = Field(..., alias="FEATURE_URL")
    zoning_layer: str = Field("24", alias="ZONING_LAYER")
    address_layer: str = Field("6", alias="ADDRESS_LAYER")

    # listener
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(5000, alias="PORT")
    transport: Literal["http", "stdio"] = Field("http", alias="MCP_TRANSPORT")

    # HTTP & session timing
    timeout_s: float = Field(10.0, alias="UPSTREAM_TIMEOUT_S")
    keepalive_s: float = Field(15.0, alias="KEEPALIVE_INTERVAL_S")
    # request/response sessions with no open stream expire after this idle time
    session_idle_s: float = Field(1800.0, alias="SESSION_IDLE_TIMEOUT_S")
    sweep_interval_s: float = Field(60.0, alias="SESSION_SWEEP_INTERVAL_S")
    max_address_matches: int = 10

    # server identity
    server_name: str = "lebanon-zoning-lookup"
    server_version: str = "3.2.0"

    # location-specific strings
    location_name: str = Field("Lebanon, NH", alias="LOCATION_NAME")
    zoning_source: str = "Lebanon Official Zoning Layer"
    address_source: str = "Lebanon Master Address Table"

    # example inputs handed back to agents on tool errors
    example_coordinates: Dict[str, float] = {"lat": 43.6426, "lon": -72.2515}
    example_address: str = "123 Main Street"

    @property
    def base_url(self) -> str:
        return str(self.feature_url).rstrip("/")

    def layer_query_url(self, layer: str) -> str:
        return f"{self.base_url}/{layer}/query"

    def error_examples(self) -> Dict[str, Any]:
        return {
            "coordinates": dict(self.example_coordinates),
            "address": self.example_address,
        }


_ENV_KEYS = (
    "FEATURE_URL",
    "ZONING_LAYER",
    "ADDRESS_LAYER",
    "HOST",
    "PORT",
    "MCP_TRANSPORT",
    "UPSTREAM_TIMEOUT_S",
    "KEEPALIVE_INTERVAL_S",
    "SESSION_IDLE_TIMEOUT_S",
    "SESSION_SWEEP_INTERVAL_S",
    "LOCATION_NAME",
)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    source = os.environ if env is None else env
    # unset and empty variables fall back to the field defaults
    values = {k: source[k] for k in _ENV_KEYS if source.get(k)}
    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        raise ConfigError(
            "Config error: set ENV FEATURE_URL (and optionally ZONING_LAYER, ADDRESS_LAYER, PORT)."
        ) from e
