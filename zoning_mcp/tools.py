from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import mcp.types as types

from .client import ZoningClient, validate_address, validate_coordinates
from .config import Settings
from .normalize import normalize_address_result, normalize_point_result

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

COORDINATES_TOOL = "lookup_zoning_by_coordinates"
ADDRESS_TOOL = "lookup_zoning_by_address"


class UnknownToolError(LookupError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: Mapping[str, Any]
    handler: ToolHandler

    def to_mcp(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=dict(self.input_schema),
        )


class ToolRegistry:
    """Read-only name -> ToolSpec table, built once at startup."""

    def __init__(self, specs: List[ToolSpec]):
        table: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in table:
                raise ValueError(f"duplicate tool name: {spec.name}")
            table[spec.name] = spec
        self._tools = MappingProxyType(table)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[types.Tool]:
        return [spec.to_mcp() for spec in self._tools.values()]


def _arg(arguments: Dict[str, Any], key: str) -> Any:
    # missing keys reach validation as None and fail there
    return arguments.get(key) if isinstance(arguments, dict) else None


def build_registry(settings: Settings, client: ZoningClient) -> ToolRegistry:
    async def lookup_by_coordinates(arguments: Dict[str, Any]) -> Dict[str, Any]:
        p = validate_coordinates(_arg(arguments, "lat"), _arg(arguments, "lon"))
        features = await client.query_by_point(p.lat, p.lon)
        return normalize_point_result(features, p.lat, p.lon, settings.zoning_source)

    async def lookup_by_address(arguments: Dict[str, Any]) -> Dict[str, Any]:
        p = validate_address(_arg(arguments, "address"))
        features = await client.query_by_address(p.address)
        return normalize_address_result(features, settings.address_source)

    return ToolRegistry([
        ToolSpec(
            name=COORDINATES_TOOL,
            description=(
                f"Look up the zoning district for a location in {settings.location_name} "
                f"using latitude and longitude coordinates. Returns the official zoning "
                f"district from the {settings.zoning_source}."
            ),
            input_schema=MappingProxyType({
                "type": "object",
                "properties": {
                    "lat": {
                        "type": "number",
                        "minimum": -90,
                        "maximum": 90,
                        "description": "Latitude coordinate (between -90 and 90)",
                    },
                    "lon": {
                        "type": "number",
                        "minimum": -180,
                        "maximum": 180,
                        "description": "Longitude coordinate (between -180 and 180)",
                    },
                },
                "required": ["lat", "lon"],
            }),
            handler=lookup_by_coordinates,
        ),
        ToolSpec(
            name=ADDRESS_TOOL,
            description=(
                f"Look up the zoning district for a location in {settings.location_name} "
                f"using a street address. Searches the {settings.address_source} and returns "
                f"the zoning district along with the full address and coordinates. "
                f"Returns multiple matches if the address is ambiguous."
            ),
            input_schema=MappingProxyType({
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": (
                            "Street address or partial address to search for "
                            "(e.g., '123 Main Street', 'Main St', or just '123')"
                        ),
                    },
                },
                "required": ["address"],
            }),
            handler=lookup_by_address,
        ),
    ])
