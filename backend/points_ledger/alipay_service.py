"""
Alipay Gateway Adapter

Implements the Alipay open-platform conventions used for point top-ups.

Features:
- RSA2 (RSA PKCS#1 v1.5 + SHA-256) request signing
- Auto-submitting page-pay form (alipay.trade.page.pay)
- Asynchronous notification signature verification
- Order query (alipay.trade.query)
- Environment switching (sandbox/live)

Required Environment Variables:
- ALIPAY_APP_ID
- ALIPAY_PRIVATE_KEY
- ALIPAY_PUBLIC_KEY (ALIPAY_ASYNC_PUBLIC_KEY preferred for notifications)
- ALIPAY_ENV (sandbox|live)

Keys missing from the environment are looked up in the admin_settings
document of type "alipay_settings".
"""

import base64
import html
import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .config import (
    ALIPAY_CONFIG,
    ALIPAY_PAGE_PAY_METHOD,
    ALIPAY_QUERY_METHOD,
    ALIPAY_QUERY_TIMEOUT_SECONDS,
    ALIPAY_SETTINGS_TYPE,
)
from .exceptions import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

BEIJING_TZ = timezone(timedelta(hours=8))

_PEM_ARMOR = re.compile(r"-----(BEGIN|END)[^-]*-----")
_WHITESPACE = re.compile(r"\s+")

KEY_SETTINGS = ("app_id", "private_key", "public_key", "async_public_key")


# ==================== CANONICAL STRINGS ====================

def build_sign_string(params: Dict[str, Any]) -> str:
    """
    Outbound canonical string: sorted key=value pairs joined by '&'.

    Skips 'sign' and empty values. 'sign_type' IS part of the signed content.
    """
    return "&".join(
        f"{key}={params[key]}"
        for key in sorted(params)
        if key != "sign" and params[key] is not None and params[key] != ""
    )


def build_verify_string(params: Dict[str, Any]) -> str:
    """
    Inbound canonical string for notifications.

    Same as build_sign_string but 'sign_type' is excluded as well.
    """
    return "&".join(
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in ("sign", "sign_type") and params[key] is not None and params[key] != ""
    )


def beijing_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(BEIJING_TZ).strftime("%Y-%m-%d %H:%M:%S")


# ==================== KEYS ====================

def _key_der(key: str) -> bytes:
    """PEM text or a bare base64 body -> DER bytes."""
    body = _WHITESPACE.sub("", _PEM_ARMOR.sub("", key))
    return base64.b64decode(body)


def load_private_key(key: str):
    """Load a PKCS#8 (or PKCS#1) RSA private key."""
    return serialization.load_der_private_key(_key_der(key), password=None)


def load_public_key(key: str):
    """Load a SubjectPublicKeyInfo RSA public key."""
    return serialization.load_der_public_key(_key_der(key))


# ==================== SETTINGS ====================

async def load_alipay_settings(db) -> Dict[str, Optional[str]]:
    """
    Resolve gateway settings: environment first, then admin_settings.
    """
    env = os.environ.get("ALIPAY_ENV", "sandbox")
    if env not in ALIPAY_CONFIG:
        logger.warning(f"Unknown ALIPAY_ENV '{env}', using sandbox")
        env = "sandbox"

    settings = {
        "app_id": os.environ.get("ALIPAY_APP_ID"),
        "private_key": os.environ.get("ALIPAY_PRIVATE_KEY"),
        "public_key": os.environ.get("ALIPAY_PUBLIC_KEY"),
        "async_public_key": os.environ.get("ALIPAY_ASYNC_PUBLIC_KEY"),
        "gateway": os.environ.get("ALIPAY_GATEWAY") or ALIPAY_CONFIG[env]["gateway"],
        "notify_url": os.environ.get("ALIPAY_NOTIFY_URL"),
        "return_url": os.environ.get("ALIPAY_RETURN_URL"),
        "downline_return_url": os.environ.get("ALIPAY_DOWNLINE_RETURN_URL"),
    }

    if not all(settings[key] for key in KEY_SETTINGS):
        stored = await db.admin_settings.find_one({"type": ALIPAY_SETTINGS_TYPE}, {"_id": 0}) or {}
        for key in KEY_SETTINGS:
            if not settings[key] and stored.get(key):
                settings[key] = stored[key]

    return settings


class AlipayGateway:
    """Signs requests to, and verifies notifications from, the Alipay gateway."""

    def __init__(
        self,
        app_id: Optional[str],
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        gateway: Optional[str] = None,
        notify_url: Optional[str] = None,
        return_url: Optional[str] = None,
        timeout: float = ALIPAY_QUERY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.public_key = public_key
        self.gateway = gateway or ALIPAY_CONFIG["live"]["gateway"]
        self.notify_url = notify_url
        self.return_url = return_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def for_checkout(cls, settings: Dict[str, Optional[str]], **kwargs) -> "AlipayGateway":
        """
        Gateway able to sign requests.

        Raises:
            ConfigurationError if the app id or either key is missing
        """
        missing = [key for key in ("app_id", "private_key", "public_key") if not settings.get(key)]
        if missing:
            logger.error(f"Alipay configuration missing: {', '.join(missing)}")
            raise ConfigurationError("Payment configuration is missing", details={"missing": missing})

        return cls(
            app_id=settings["app_id"],
            private_key=settings["private_key"],
            public_key=settings["public_key"],
            gateway=settings.get("gateway"),
            notify_url=settings.get("notify_url"),
            return_url=settings.get("return_url"),
            **kwargs
        )

    @classmethod
    def for_notifications(cls, settings: Dict[str, Optional[str]]) -> Optional["AlipayGateway"]:
        """Gateway able to verify notifications, or None without a public key."""
        public_key = settings.get("async_public_key") or settings.get("public_key")
        if not public_key:
            return None
        return cls(app_id=settings.get("app_id"), public_key=public_key, gateway=settings.get("gateway"))

    # ==================== SIGNING ====================

    def sign(self, params: Dict[str, Any]) -> str:
        if not self.private_key:
            raise ConfigurationError("Alipay private key is not configured")
        content = build_sign_string(params).encode("utf-8")
        signature = load_private_key(self.private_key).sign(content, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def build_request_params(
        self,
        method: str,
        biz_content: Dict[str, Any],
        return_url: Optional[str] = None
    ) -> Dict[str, str]:
        params = {
            "app_id": self.app_id,
            "method": method,
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": beijing_timestamp(),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, separators=(",", ":"), ensure_ascii=False),
        }
        if self.notify_url:
            params["notify_url"] = self.notify_url
        if return_url or self.return_url:
            params["return_url"] = return_url or self.return_url

        params["sign"] = self.sign(params)
        return params

    def page_pay(self, biz_content: Dict[str, Any], return_url: Optional[str] = None) -> str:
        """
        Build the desktop page-pay form.

        Returns:
            HTML that posts the signed parameters to the gateway on load
        """
        params = self.build_request_params(ALIPAY_PAGE_PAY_METHOD, biz_content, return_url=return_url)

        inputs = "\n".join(
            f'      <input type="hidden" name="{html.escape(key)}" value="{html.escape(value, quote=True)}" />'
            for key, value in params.items()
        )
        action = html.escape(f"{self.gateway}?charset=utf-8", quote=True)

        return (
            "<!DOCTYPE html>\n"
            "<html>\n"
            "  <head><title>Alipay</title></head>\n"
            "  <body>\n"
            f'    <form id="alipaysubmit" name="alipaysubmit" action="{action}" method="POST">\n'
            f"{inputs}\n"
            '      <input type="submit" value="Pay" style="display:none" />\n'
            "    </form>\n"
            "    <script>document.forms['alipaysubmit'].submit();</script>\n"
            "  </body>\n"
            "</html>\n"
        )

    # ==================== VERIFICATION ====================

    def verify_notification(self, params: Dict[str, Any]) -> bool:
        """
        Verify an asynchronous notification.

        Returns:
            True only for a well-formed signature that matches; never raises
        """
        signature = params.get("sign")
        if not signature or not self.public_key:
            return False

        content = build_verify_string(params).encode("utf-8")
        try:
            public_key = load_public_key(self.public_key)
            public_key.verify(base64.b64decode(signature), content, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.warning(f"Alipay signature could not be checked: {e}")
            return False
        return True

    # ==================== QUERY ====================

    async def query(self, out_trade_no: str) -> Dict[str, Any]:
        """
        Ask the gateway for an order's trade status.

        Returns:
            The alipay_trade_query_response object
        """
        params = self.build_request_params(ALIPAY_QUERY_METHOD, {"out_trade_no": out_trade_no})

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.gateway}?charset=utf-8",
                    headers={"Content-Type": "application/x-www-form-urlencoded;charset=utf-8"},
                    data=params
                )
        except httpx.HTTPError as e:
            logger.error(f"Alipay query failed for {out_trade_no}: {e}")
            raise UpstreamError("Payment gateway unreachable")

        if response.status_code != 200:
            logger.error(f"Alipay query failed for {out_trade_no}: HTTP {response.status_code}")
            raise UpstreamError(f"Payment gateway error: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise UpstreamError("Payment gateway returned an unreadable response")

        return body.get("alipay_trade_query_response") or {}
