from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field, field_validator

from chat_server.errors import ToolError

from .gateway import Tool

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
UA = "ResumableChat/1.0 (+company-registry)"
TIMEOUT = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0)
LOOKUP_PATH = "/api/v1/companies/krs/{krs}"
KRS_RE = re.compile(r"^\d{10}$")


# -----------------------------------------------------------------------------
# Arguments
# -----------------------------------------------------------------------------
class CompanyLookupArgs(BaseModel):
    krs_number: str = Field(
        ...,
        description="KRS (National Court Register) number: exactly 10 digits, leading zeros included.",
    )

    @field_validator("krs_number")
    @classmethod
    def _ten_digits(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 10:
            raise ValueError("KRS number must be exactly 10 characters long.")
        if not KRS_RE.match(v):
            raise ValueError("KRS number must contain only digits.")
        return v


# -----------------------------------------------------------------------------
# Status mapping
# -----------------------------------------------------------------------------
def _error_for_status(status: int, krs: str) -> ToolError:
    if status == 403:
        # Credential problem on our side; never echo the credential.
        return ToolError(
            "forbidden",
            "Access to the company data service was denied. Please check the API configuration.",
        )
    if status == 404:
        return ToolError("not_found", f"Company with KRS number {krs} not found.")
    if status == 422:
        return ToolError("invalid_input", f"Invalid KRS number format for {krs}. It must be 10 digits.")
    if status == 500:
        return ToolError("internal", "An internal server error occurred while fetching company data.")
    if status in (502, 503, 504):
        return ToolError(
            "upstream_unavailable",
            "The external KRS service is currently unavailable. Please try again later.",
        )
    if 400 <= status < 500:
        return ToolError("invalid_input", f"The company data service rejected the request (status {status}).")
    return ToolError("upstream_unavailable", f"Failed to fetch company data (status {status}).")


# -----------------------------------------------------------------------------
# Tool
# -----------------------------------------------------------------------------
class CompanyRegistryTool(Tool):
    """Look up a company in the external registry by its 10-digit KRS number."""

    name = "getCompanyByKRS"
    description = "Get company information by its KRS (National Court Register) number."
    args_model = CompanyLookupArgs

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self._api_key = api_key or ""
        self._timeout = httpx.Timeout(float(timeout)) if timeout else TIMEOUT
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self._api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": UA,
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def run(self, args: CompanyLookupArgs) -> Any:
        krs = args.krs_number
        logger.info("Company lookup for KRS %s (api key %s)", krs, "set" if self._api_key else "not set")
        if not self.configured:
            logger.error("Company registry base_url or api_key is not configured.")
            raise ToolError("upstream_unavailable", "The company data service is not configured.")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                r = await client.get(LOOKUP_PATH.format(krs=krs))
        except httpx.TimeoutException as e:
            logger.warning("Company lookup timed out for %s: %s", krs, type(e).__name__)
            raise ToolError(
                "upstream_unavailable",
                "The external KRS service did not respond in time. Please try again later.",
            )
        except httpx.RequestError as e:
            # e may carry the host; log the type only at warning level.
            logger.warning("Company lookup network error for %s: %s", krs, type(e).__name__)
            logger.debug("Company lookup network error detail: %s", e)
            raise ToolError(
                "upstream_unavailable",
                "The external KRS service is currently unavailable. Please try again later.",
            )

        if r.status_code >= 400:
            logger.warning("Company registry returned %d for %s", r.status_code, krs)
            raise _error_for_status(r.status_code, krs)

        try:
            return r.json()
        except ValueError:
            logger.error("Company registry returned a non-JSON body for %s", krs)
            raise ToolError("internal", "The company data service returned an unreadable response.")


def build_company_registry_tool(cfg: Dict[str, Any], **kwargs: Any) -> CompanyRegistryTool:
    c = ((cfg.get("tools", {}) or {}).get("company_registry", {})) or {}
    return CompanyRegistryTool(
        c.get("base_url"),
        c.get("api_key"),
        timeout=c.get("timeout"),
        **kwargs,
    )
