from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional, Union


# =========================
# TOOL INPUTS
# =========================
class CoordinateLookupInput(BaseModel):
    # strict: rejects bools and numeric strings, ints are still accepted
    lat: float = Field(..., strict=True, allow_inf_nan=False, ge=-90, le=90)
    lon: float = Field(..., strict=True, allow_inf_nan=False, ge=-180, le=180)


class AddressLookupInput(BaseModel):
    address: str = Field(..., strict=True)

    @field_validator("address")
    @classmethod
    def _non_blank(cls, v: str):
        if not v.strip():
            raise ValueError("address must be a non-empty string")
        return v


# =========================
# JSON-RPC ENVELOPE
# =========================
RequestId = Union[str, int]


class RpcEnvelope(BaseModel):
    """Inbound JSON-RPC 2.0 message (request or notification)."""
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str
    method: str = Field(..., min_length=1)
    id: Optional[RequestId] = None
    params: Optional[Dict[str, Any]] = None

    @field_validator("jsonrpc")
    @classmethod
    def _v2(cls, v: str):
        if v != "2.0":
            raise ValueError("jsonrpc must be '2.0'")
        return v

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class ToolCallParams(BaseModel):
    name: str
    arguments: Optional[Dict[str, Any]] = None
