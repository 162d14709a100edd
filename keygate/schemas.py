# schemas.py
"""
Request bodies. Field names follow the JSON the panel UI sends
(camelCase); helpers turn them into store attribute names.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, constr, field_validator, model_validator

from .helpers import is_valid_url
from .model.db import KEY_MULTI_USE, KEY_SINGLE_USE, KEY_TYPES

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class LoginIn(BaseModel):
    username: constr(strip_whitespace=True, min_length=1, max_length=100)
    password: constr(min_length=1, max_length=200)


class KeyCreateIn(BaseModel):
    name: Optional[constr(strip_whitespace=True, max_length=255)] = None
    type: str = KEY_SINGLE_USE
    maxQuantity: Optional[int] = Field(default=None, ge=1)
    serviceId: Optional[int] = None
    count: int = Field(default=1, ge=1, le=200)

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        if v not in KEY_TYPES:
            raise ValueError(f"must be one of {', '.join(KEY_TYPES)}")
        return v

    @model_validator(mode="after")
    def _multi_use_needs_quota(self):
        if self.type == KEY_MULTI_USE and self.maxQuantity is None:
            raise ValueError("maxQuantity is required for multi-use keys")
        return self


class ValidateKeyIn(BaseModel):
    key: constr(strip_whitespace=True, min_length=1, max_length=255)


class OrderIn(BaseModel):
    keyValue: constr(strip_whitespace=True, min_length=1, max_length=255)
    serviceId: int
    targetUrl: constr(strip_whitespace=True, min_length=1, max_length=500)
    quantity: int = Field(ge=1)

    @field_validator("targetUrl")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not is_valid_url(v):
            raise ValueError("must be an http(s) URL")
        return v


class ServiceIn(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=255)
    platform: constr(strip_whitespace=True, min_length=1, max_length=100)
    type: constr(strip_whitespace=True, min_length=1, max_length=100)
    icon: Optional[str] = None
    isActive: bool = True
    apiEndpoint: Optional[constr(strip_whitespace=True, max_length=500)] = None
    apiMethod: str = "POST"
    apiHeaders: Dict[str, str] = Field(default_factory=dict)
    requestTemplate: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("apiMethod")
    @classmethod
    def _method(cls, v: str) -> str:
        v = v.upper()
        if v not in HTTP_METHODS:
            raise ValueError(f"must be one of {', '.join(HTTP_METHODS)}")
        return v

    @field_validator("apiEndpoint")
    @classmethod
    def _endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v and not is_valid_url(v):
            raise ValueError("must be an http(s) URL")
        return v or None


class ServiceUpdateIn(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1,
                          max_length=255)] = None
    platform: Optional[constr(strip_whitespace=True, min_length=1,
                              max_length=100)] = None
    type: Optional[constr(strip_whitespace=True, min_length=1,
                          max_length=100)] = None
    icon: Optional[str] = None
    isActive: Optional[bool] = None
    apiEndpoint: Optional[str] = None
    apiMethod: Optional[str] = None
    apiHeaders: Optional[Dict[str, str]] = None
    requestTemplate: Optional[Dict[str, Any]] = None

    @field_validator("apiMethod")
    @classmethod
    def _method(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.upper()
        if v not in HTTP_METHODS:
            raise ValueError(f"must be one of {', '.join(HTTP_METHODS)}")
        return v

    @field_validator("apiEndpoint")
    @classmethod
    def _endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v and not is_valid_url(v):
            raise ValueError("must be an http(s) URL")
        return v


class ServicesImportIn(BaseModel):
    # items are validated one by one so a bad entry does not sink the batch
    services: List[Dict[str, Any]] = Field(min_length=1)


class ServicesFetchIn(BaseModel):
    apiUrl: constr(strip_whitespace=True, min_length=1, max_length=500)
    apiKey: constr(strip_whitespace=True, min_length=1, max_length=255)

    @field_validator("apiUrl")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not is_valid_url(v):
            raise ValueError("must be an http(s) URL")
        return v


class AdminCreateIn(BaseModel):
    username: constr(strip_whitespace=True, min_length=3, max_length=100)
    password: constr(min_length=6, max_length=200)
    email: Optional[constr(strip_whitespace=True, max_length=255)] = None


class AdminStatusIn(BaseModel):
    isActive: bool


# ----------------------------
# camelCase -> column names
# ----------------------------
SERVICE_ATTRS = {
    "name": "name",
    "platform": "platform",
    "type": "type",
    "icon": "icon",
    "isActive": "is_active",
    "apiEndpoint": "api_endpoint",
    "apiMethod": "api_method",
    "apiHeaders": "api_headers",
    "requestTemplate": "request_template",
}


def service_fields(body: BaseModel, *, partial: bool = False
                   ) -> Dict[str, Any]:
    data = body.model_dump(exclude_unset=partial)
    if partial:
        # explicit nulls only clear the nullable columns
        data = {k: v for k, v in data.items()
                if v is not None or k in ("icon", "apiEndpoint")}
    return {SERVICE_ATTRS[k]: v for k, v in data.items() if k in SERVICE_ATTRS}


def import_item(raw: Dict[str, Any], index: int) -> ServiceIn:
    """Fill the defaults a provider export usually lacks, then validate."""
    return ServiceIn(
        name=raw.get("name") or raw.get("title") or f"Service {index + 1}",
        platform=raw.get("platform") or "External API",
        type=raw.get("type") or "API Service",
        icon=raw.get("icon") or "Settings",
        isActive=raw.get("isActive") is not False,
        apiEndpoint=raw.get("apiEndpoint") or raw.get("endpoint"),
        apiMethod=raw.get("apiMethod") or "POST",
        apiHeaders=raw.get("apiHeaders") or {},
        requestTemplate=raw.get("requestTemplate") or {},
    )
