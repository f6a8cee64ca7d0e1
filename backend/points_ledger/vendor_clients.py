"""
HTTP clients for the two rewriting vendors.

Each client knows its vendor's login, submit and status calls and
normalizes status answers to processing/completed/failed. Every call is
made with an explicit timeout; a timeout is reported as VendorTimeoutError,
any other transport failure or refusal as VendorRejectedError. The
rejection's details carry the sentinel reference for the attempt log.
"""

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .config import (
    CHEEYUAN_PRODUCT_TYPE,
    CHEEYUAN_ROUTES,
    DEFAULT_VENDOR_TIMEOUT_SECONDS,
    REDUCEAI_TOOL_NAMES,
    TASK_STATUSES,
    VENDOR_CHEEYUAN,
    VENDOR_ENV_VARS,
    VENDOR_REDUCEAI,
)
from .exceptions import ConfigurationError, UpstreamError, ValidationError, VendorRejectedError, VendorTimeoutError
from .models import VendorTaskStatus

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def route_vendor(platform: str, job_type: str) -> str:
    """Vendor for a (platform, job type) pair."""
    if (platform, job_type) in CHEEYUAN_ROUTES:
        return VENDOR_CHEEYUAN
    return VENDOR_REDUCEAI


def vendor_timeout() -> float:
    raw = os.environ.get("VENDOR_TIMEOUT_SECONDS")
    if not raw:
        return float(DEFAULT_VENDOR_TIMEOUT_SECONDS)
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid VENDOR_TIMEOUT_SECONDS '{raw}', using {DEFAULT_VENDOR_TIMEOUT_SECONDS}")
        return float(DEFAULT_VENDOR_TIMEOUT_SECONDS)


def vendor_settings(vendor: str) -> Dict[str, str]:
    """
    Read a vendor's base URL and login from the environment.

    Raises:
        ConfigurationError naming every missing variable
    """
    names = VENDOR_ENV_VARS[vendor]
    values = {name: os.environ.get(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        logger.error(f"Missing vendor configuration: {', '.join(missing)}")
        raise ConfigurationError(
            "External service configuration is missing",
            details={"missing": missing}
        )

    url_var, login_var, password_var = names
    return {
        "base_url": values[url_var].rstrip("/"),
        "login": values[login_var],
        "password": values[password_var],
    }


class VendorClient:
    """Shared request handling for vendor clients."""

    name = ""

    def __init__(
        self,
        base_url: str,
        login: str,
        password: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.login_name = login
        self.password = password
        self.timeout = timeout if timeout is not None else vendor_timeout()
        self.transport = transport

    @classmethod
    def from_env(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "VendorClient":
        settings = vendor_settings(cls.name)
        return cls(settings["base_url"], settings["login"], settings["password"], transport=transport)

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                return await client.request(method, f"{self.base_url}{path}", headers=headers, json=json)
        except httpx.TimeoutException:
            logger.warning(f"{self.name} {method} {path} timed out after {self.timeout}s")
            raise VendorTimeoutError(details={"reference": f"{self.name}-timeout", "service": self.name})
        except httpx.HTTPError as e:
            logger.error(f"{self.name} {method} {path} failed: {e}")
            raise VendorRejectedError(
                f"{self.name} request failed",
                details={"reference": f"{self.name}-request-failed", "service": self.name}
            )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _rejected(self, message: str, reference: str) -> VendorRejectedError:
        return VendorRejectedError(message, details={"reference": reference, "service": self.name})

    async def login(self) -> str:
        raise NotImplementedError

    async def submit(self, token: str, text: str, platform: str, job_type: str) -> str:
        raise NotImplementedError

    async def status(self, token: str, task_id: str) -> VendorTaskStatus:
        raise NotImplementedError


class CheeyuanClient(VendorClient):
    """Vendor used for CNKI AI-rate reduction."""

    name = VENDOR_CHEEYUAN

    async def login(self) -> str:
        response = await self._request(
            "POST", "/user/login",
            json={"account": self.login_name, "password": self.password}
        )
        if not response.is_success:
            raise UpstreamError(f"{self.name} login failed: HTTP {response.status_code}")

        token = (self._json(response).get("data") or {}).get("token")
        if not token:
            raise UpstreamError(f"{self.name} login returned no token")
        return token

    async def submit(self, token: str, text: str, platform: str, job_type: str) -> str:
        response = await self._request(
            "POST", "/tools/freechangeword/async",
            token=token,
            json={"content": text, "product_type": CHEEYUAN_PRODUCT_TYPE}
        )
        if not response.is_success:
            logger.error(f"{self.name} submit failed: HTTP {response.status_code}")
            raise self._rejected(f"{self.name} task submission failed", f"{self.name}-request-failed")

        body = self._json(response)
        if body.get("code") != 1 or not body.get("data"):
            logger.error(f"{self.name} submit refused: {body.get('message')}")
            raise self._rejected(body.get("message") or f"{self.name} task submission failed", f"{self.name}-no-data")

        return str(body["data"])

    async def status(self, token: str, task_id: str) -> VendorTaskStatus:
        try:
            numeric_id = int(task_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid {self.name} task id: {task_id}")

        response = await self._request("POST", "/tools/common/status", token=token, json={"id": numeric_id})
        if not response.is_success:
            raise UpstreamError(f"{self.name} status query failed: HTTP {response.status_code}")

        body = self._json(response)
        if body.get("code") != 1:
            raise UpstreamError(body.get("message") or f"{self.name} status query failed")

        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.name} status answer has no data")

        deal_status = data.get("deal_status")
        if deal_status == 1 and data.get("resulttext"):
            status = "completed"
        elif deal_status == 2:
            status = "failed"
        else:
            status = "processing"

        return VendorTaskStatus(
            status=status,
            progress=100 if status == "completed" else 0,
            result_text=data.get("resulttext") if status == "completed" else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at")
        )


class ReduceAIClient(VendorClient):
    """Vendor used for plagiarism reduction and VIP AI-rate reduction."""

    name = VENDOR_REDUCEAI

    async def login(self) -> str:
        response = await self._request(
            "POST", "/auth/login",
            json={"username": self.login_name, "password": self.password}
        )
        if not response.is_success:
            raise UpstreamError(f"{self.name} login failed: HTTP {response.status_code}")

        token = self._json(response).get("token")
        if not token:
            raise UpstreamError(f"{self.name} login returned no token")
        return token

    async def submit(self, token: str, text: str, platform: str, job_type: str) -> str:
        response = await self._request(
            "POST", "/ai/reduce",
            token=token,
            json={"text": text, "toolName": REDUCEAI_TOOL_NAMES[job_type]}
        )
        if not response.is_success:
            logger.error(f"{self.name} submit failed: HTTP {response.status_code}")
            raise self._rejected(f"{self.name} task submission failed", f"{self.name}-request-failed")

        task_id = self._json(response).get("taskId")
        if not task_id:
            raise self._rejected("Task submission failed, no task id returned", f"{self.name}-no-task-id")

        return str(task_id)

    async def status(self, token: str, task_id: str) -> VendorTaskStatus:
        response = await self._request("GET", f"/result/{quote(task_id, safe='')}", token=token)

        # the vendor answers non-2xx while a task is still queued
        if not response.is_success:
            logger.info(f"{self.name} status for {task_id}: HTTP {response.status_code}, reporting processing")
            return VendorTaskStatus(status="processing", progress=0)

        body = self._json(response)
        result = body.get("result")
        if isinstance(result, str) and result:
            return VendorTaskStatus(status="completed", progress=100, result_text=result)

        status = body.get("status")
        if status not in TASK_STATUSES:
            status = "processing"

        return VendorTaskStatus(
            status=status,
            progress=_as_int(body.get("progress")) or 0,
            queue_position=_as_int(body.get("queuePosition")),
            created_at=body.get("created_at"),
            updated_at=body.get("updated_at")
        )


VENDOR_CLIENTS = {
    VENDOR_CHEEYUAN: CheeyuanClient,
    VENDOR_REDUCEAI: ReduceAIClient,
}


def build_vendor_client(vendor: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> VendorClient:
    return VENDOR_CLIENTS[vendor].from_env(transport=transport)
