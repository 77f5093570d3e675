from typing import Any, Dict, List, Optional, Tuple

import pytest

from zoning_mcp.client import ZoningClient
from zoning_mcp.config import Settings, load_settings
from zoning_mcp.dispatcher import ProtocolDispatcher
from zoning_mcp.sessions import SessionStore
from zoning_mcp.tools import build_registry
from zoning_mcp.transport import SessionTransport

FEATURE_URL = "https://gis.example.com/arcgis/rest/services/OpenGov/FeatureServer"


def zoning_feature(**attrs: Any) -> Dict[str, Any]:
    return {"attributes": attrs}


def address_feature(number: str, street: str, zone: Optional[str] = "R1", **extra: Any) -> Dict[str, Any]:
    attrs = {
        "AddNo_Full": number,
        "StNam_Full": street,
        "d_gis_zone": zone,
        "Latitude": 43.64,
        "Longitude": -72.25,
    }
    attrs.update(extra)
    return {"attributes": attrs}


class StubClient(ZoningClient):
    """ZoningClient with the network call replaced by canned responses."""

    def __init__(self, settings: Settings, responses: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        super().__init__(settings)
        self.responses = responses or {}
        self.error = error
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    async def get_query(self, layer: str, params: Dict[str, str]) -> Dict[str, Any]:
        self.calls.append((layer, params))
        if self.error is not None:
            raise self.error
        return self.responses.get(layer, {"features": []})


@pytest.fixture
def settings() -> Settings:
    return load_settings({"FEATURE_URL": FEATURE_URL})


@pytest.fixture
def stub_client(settings) -> StubClient:
    return StubClient(
        settings,
        responses={
            settings.zoning_layer: {"features": [zoning_feature(ZONE="R-3", OBJECTID=7)]},
            settings.address_layer: {"features": [address_feature("14", "AMSDEN ST", "R2")]},
        },
    )


@pytest.fixture
def dispatcher(settings, stub_client) -> ProtocolDispatcher:
    return ProtocolDispatcher(settings, build_registry(settings, stub_client))


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def transport(settings, store, dispatcher) -> SessionTransport:
    return SessionTransport(settings, store, dispatcher)


def rpc(method: str, params: Optional[Dict[str, Any]] = None, request_id: Any = 1) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        msg["params"] = params
    if request_id is not None:
        msg["id"] = request_id
    return msg
