"""Shape raw FeatureServer features into stable lookup results."""

from typing import Any, Dict, List, Optional

from .client import ADDRESS_NUMBER_FIELD, STREET_NAME_FIELD

UNKNOWN_DISTRICT = "Unknown"

# zoning layers name the district column differently; first truthy wins
DISTRICT_FIELDS = ("ACAD_TEXT", "ZONE", "ZONING", "DISTRICT", "District", "NAME")

# master address table columns
ADDRESS_DISTRICT_FIELD = "d_gis_zone"
LATITUDE_FIELD = "Latitude"
LONGITUDE_FIELD = "Longitude"

NO_DISTRICT_MESSAGE = "No zoning district found for that location."
NO_ADDRESS_MESSAGE = (
    "No addresses found matching your search. Try using just the street name or number."
)


def _attributes(feature: Dict[str, Any]) -> Dict[str, Any]:
    attrs = feature.get("attributes")
    return attrs if isinstance(attrs, dict) else {}


def resolve_district(attrs: Dict[str, Any]) -> Any:
    for field in DISTRICT_FIELDS:
        value = attrs.get(field)
        if value:
            return value
    return UNKNOWN_DISTRICT


def _coordinates(attrs: Dict[str, Any]) -> Dict[str, Any]:
    coords: Dict[str, Any] = {}
    # missing columns are left out rather than sent as null
    if attrs.get(LATITUDE_FIELD) is not None:
        coords["lat"] = attrs[LATITUDE_FIELD]
    if attrs.get(LONGITUDE_FIELD) is not None:
        coords["lon"] = attrs[LONGITUDE_FIELD]
    return coords


def normalize_point_result(
    features: List[Dict[str, Any]],
    lat: float,
    lon: float,
    source: str,
) -> Dict[str, Any]:
    feature: Optional[Dict[str, Any]] = features[0] if features else None
    if feature is None:
        return {"found": False, "message": NO_DISTRICT_MESSAGE}

    attrs = _attributes(feature)
    return {
        "found": True,
        "district": resolve_district(attrs),
        "attributes": attrs,
        "coordinates": {"lat": lat, "lon": lon},
        "source": source,
    }


def address_match(feature: Dict[str, Any]) -> Dict[str, Any]:
    attrs = _attributes(feature)
    number = attrs.get(ADDRESS_NUMBER_FIELD) or ""
    street = attrs.get(STREET_NAME_FIELD) or ""
    return {
        "address": f"{number} {street}".strip(),
        "district": attrs.get(ADDRESS_DISTRICT_FIELD) or UNKNOWN_DISTRICT,
        "coordinates": _coordinates(attrs),
        "allAttributes": attrs,
    }


def normalize_address_result(features: List[Dict[str, Any]], source: str) -> Dict[str, Any]:
    if not features:
        return {"found": False, "message": NO_ADDRESS_MESSAGE}

    # upstream order is kept as-is
    matches = [address_match(f) for f in features]

    if len(matches) == 1:
        return {"found": True, **matches[0], "source": source}

    return {
        "found": True,
        "multipleMatches": True,
        "count": len(matches),
        "matches": matches,
        "message": f"Found {len(matches)} matching addresses. Please be more specific.",
        "source": source,
    }
