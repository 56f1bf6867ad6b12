"""
PAYSTACK GATEWAY CLIENT

Two calls the payment core needs:
- initialize_charge: POST /transaction/initialize (amount in minor units)
- verify_charge: GET /transaction/verify/{reference}

Plus webhook signature verification (HMAC-SHA512 over the raw body with
the account secret key, hex encoded, header x-paystack-signature).

Transport errors, timeouts and 5xx responses raise GatewayUnavailableError
(safe to retry); 4xx and `status: false` raise GatewayRequestError.
"""

from typing import Any, Dict, Optional, Union
import hashlib
import hmac
import logging

import httpx

from .exceptions import ConfigurationError, GatewayRequestError, GatewayUnavailableError
from .money import Number, to_minor_units

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"
DEFAULT_TIMEOUT = 30.0
SIGNATURE_HEADER = "x-paystack-signature"


def compute_webhook_signature(raw_body: Union[bytes, str], secret: str) -> str:
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_webhook_signature(raw_body: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    """Constant-time comparison of the provider signature with our own HMAC"""
    if not signature or not secret:
        return False
    expected = compute_webhook_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        public_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not secret_key or not public_key:
            raise ConfigurationError("Paystack configuration is missing")

        self.secret_key = secret_key
        self.public_key = public_key
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"[PAYSTACK] {method} {path} timed out")
            raise GatewayUnavailableError(f"Paystack request timed out: {path}") from e
        except httpx.TransportError as e:
            logger.error(f"[PAYSTACK] {method} {path} transport error: {e}")
            raise GatewayUnavailableError(f"Paystack unreachable: {e}") from e

        if response.status_code >= 500:
            logger.error(f"[PAYSTACK] {method} {path} -> {response.status_code}")
            raise GatewayUnavailableError(
                f"Paystack returned {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise GatewayRequestError(
                f"Paystack returned a non-JSON body ({response.status_code})", status_code=response.status_code
            )

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Paystack request failed ({response.status_code})"
            logger.warning(f"[PAYSTACK] {method} {path} rejected: {message}")
            raise GatewayRequestError(message, status_code=response.status_code)

        return body.get("data") or {}

    async def initialize_charge(
        self,
        email: str,
        amount: Number,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        currency: Optional[str] = None
    ) -> Dict[str, Any]:
        """Returns {authorization_url, access_code, reference}"""
        payload: Dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "metadata": metadata or {},
        }
        if currency:
            payload["currency"] = currency

        data = await self._request("POST", "/transaction/initialize", json=payload)
        logger.info(f"[PAYSTACK] Initialized charge {data.get('reference', reference)}")
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": data.get("reference") or reference,
        }

    async def verify_charge(self, reference: str) -> Dict[str, Any]:
        """Returns the gateway transaction record (status, amount, reference, ...)"""
        return await self._request("GET", f"/transaction/verify/{reference}")
