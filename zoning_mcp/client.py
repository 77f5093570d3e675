import asyncio
import json
import re
import time
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .config import Settings
from .schemas import AddressLookupInput, CoordinateLookupInput
from .utils import logger, new_request_id


# ---------- error taxonomy ----------
class InputValidationError(ValueError):
    """Bad lookup input, detected locally before any request is made."""
    pass


class UpstreamError(RuntimeError):
    """Any failure talking to the ArcGIS FeatureServer."""
    pass


class UpstreamTimeoutError(UpstreamError):
    pass


class UpstreamConnectionError(UpstreamError):
    pass


class UpstreamHTTPError(UpstreamError):
    def __init__(self, status: int, body: str):
        super().__init__(f"ArcGIS query failed: {status} - {body}")
        self.status = status
        self.body = body


class UpstreamServiceError(UpstreamError):
    """HTTP 200 whose JSON payload carries an `error` object."""

    def __init__(self, error: Any):
        super().__init__(f"ArcGIS error: {json.dumps(error)}")
        self.error = error


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}")
    return "; ".join(parts)


def validate_coordinates(lat: Any, lon: Any) -> CoordinateLookupInput:
    try:
        return CoordinateLookupInput.model_validate({"lat": lat, "lon": lon})
    except ValidationError as e:
        raise InputValidationError(_validation_message(e)) from e


def validate_address(address: Any) -> AddressLookupInput:
    try:
        return AddressLookupInput.model_validate({"address": address})
    except ValidationError as e:
        raise InputValidationError(_validation_message(e)) from e


# ---------- query builders ----------
WKID = 4326
ADDRESS_NUMBER_FIELD = "AddNo_Full"
STREET_NAME_FIELD = "StNam_Full"

_LEADING_DIGIT = re.compile(r"^\d")


def escape_sql_literal(s: str) -> str:
    """Double single quotes so user text cannot close a '...' literal."""
    return s.replace("'", "''")


def build_point_params(lat: float, lon: float) -> Dict[str, str]:
    return {
        "f": "json",
        "geometry": json.dumps(
            {"x": lon, "y": lat, "spatialReference": {"wkid": WKID}},
            separators=(",", ":"),
        ),
        "geometryType": "esriGeometryPoint",
        "inSR": str(WKID),
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": "*",
        "returnGeometry": "false",
    }


def build_address_where(address: str) -> str:
    """
    Build the `where` clause for an address search.
    - "14 AMSDEN ST" -> number LIKE '%14%' AND street LIKE '%AMSDEN ST%'
    - "AMSDEN" / "123" -> street LIKE '%...%' OR number LIKE '%...%'
    """
    upper = address.upper().strip()
    parts = upper.split()

    if len(parts) > 1 and _LEADING_DIGIT.match(parts[0]):
        number = escape_sql_literal(parts[0])
        street = escape_sql_literal(" ".join(parts[1:]))
        return (
            f"UPPER({ADDRESS_NUMBER_FIELD}) LIKE '%{number}%' "
            f"AND UPPER({STREET_NAME_FIELD}) LIKE '%{street}%'"
        )

    escaped = escape_sql_literal(upper)
    return (
        f"UPPER({STREET_NAME_FIELD}) LIKE '%{escaped}%' "
        f"OR UPPER({ADDRESS_NUMBER_FIELD}) LIKE '%{escaped}%'"
    )


def build_address_params(address: str, max_records: int) -> Dict[str, str]:
    return {
        "f": "json",
        "where": build_address_where(address),
        "outFields": "*",
        "returnGeometry": "false",
        "resultRecordCount": str(int(max_records)),
    }


class ZoningClient:
    """
    Read-only client for an ArcGIS FeatureServer.
    - Endpoint: GET {FEATURE_URL}/{layer}/query
    - One attempt per call, hard timeout (default 10s), no retries.
    """

    def __init__(self, settings: Settings):
        self.s = settings
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure(self):
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.s.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    # ---------- HTTP helper ----------
    async def get_query(self, layer: str, params: Dict[str, str]) -> Dict[str, Any]:
        """
        Issue one GET against `{base}/{layer}/query` and return the decoded JSON.
        Raises a typed UpstreamError for timeout, network, HTTP and embedded errors.
        """
        await self._ensure()
        assert self._session is not None

        url = self.s.layer_query_url(layer)
        rid = new_request_id()
        t0 = time.perf_counter()

        try:
            async with self._session.get(url, params=params) as resp:
                elapsed_ms = (time.perf_counter() - t0) * 1000.0
                text = await resp.text()

                if not 200 <= resp.status < 300:
                    logger.warning(
                        "arcgis_resp_error",
                        extra={
                            "rid": rid,
                            "layer": layer,
                            "status": resp.status,
                            "elapsed_ms": round(elapsed_ms, 2),
                            "body_preview": text[:500],
                        },
                    )
                    raise UpstreamHTTPError(resp.status, text)

                try:
                    data = json.loads(text)
                except json.JSONDecodeError as je:
                    logger.warning(
                        "arcgis_resp_json_decode_error",
                        extra={"rid": rid, "layer": layer, "error": str(je)},
                    )
                    raise UpstreamServiceError({"message": "response is not valid JSON"}) from je

                if isinstance(data, dict) and data.get("error"):
                    logger.warning(
                        "arcgis_resp_embedded_error",
                        extra={"rid": rid, "layer": layer, "error": data["error"]},
                    )
                    raise UpstreamServiceError(data["error"])

                logger.info(
                    "arcgis_resp_ok",
                    extra={
                        "rid": rid,
                        "layer": layer,
                        "status": resp.status,
                        "elapsed_ms": round(elapsed_ms, 2),
                    },
                )
                return data if isinstance(data, dict) else {}

        except asyncio.TimeoutError as te:
            logger.warning("arcgis_timeout", extra={"rid": rid, "layer": layer})
            raise UpstreamTimeoutError(
                "Request timeout: ArcGIS server took too long to respond"
            ) from te
        except aiohttp.ClientError as neterr:
            logger.warning("arcgis_network_error", extra={"rid": rid, "layer": layer, "error": str(neterr)})
            raise UpstreamConnectionError(f"ArcGIS request failed: {neterr}") from neterr

    # ---------- lookups ----------
    async def query_by_point(self, lat: Any, lon: Any) -> List[Dict[str, Any]]:
        p = validate_coordinates(lat, lon)
        data = await self.get_query(self.s.zoning_layer, build_point_params(p.lat, p.lon))
        return _features(data)

    async def query_by_address(self, address: Any) -> List[Dict[str, Any]]:
        p = validate_address(address)
        params = build_address_params(p.address, self.s.max_address_matches)
        data = await self.get_query(self.s.address_layer, params)
        return _features(data)


def _features(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    feats = data.get("features")
    if not isinstance(feats, list):
        return []
    return [f for f in feats if isinstance(f, dict)]
