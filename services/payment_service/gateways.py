"""
Outbound gateway clients.

Each client turns a generic ``ChargeRequest`` into its provider's request
shape and normalizes the provider's answer into a ``GatewayResult``. Raw
responses are kept on the result as a snapshot for the payment row.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import GatewayError
from .models import PaymentType

logger = logging.getLogger(__name__)

# Midtrans reports local (Asia/Jakarta) timestamps
MIDTRANS_UTC_OFFSET = timedelta(hours=7)


class ChargeLine(BaseModel):
    """One line of the item breakdown sent to the gateway."""
    id: str
    name: str
    price: float
    quantity: int = 1
    category: str = "product"


class ChargeRequest(BaseModel):
    """Gateway-neutral charge/invoice request."""
    order_id: str
    gross_amount: float
    customer_name: str
    customer_email: str
    payment_method: str
    lines: List[ChargeLine]
    bank: Optional[str] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    return_product_id: Optional[str] = None


class GatewayResult(BaseModel):
    """Normalized gateway response."""
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    native_status: Optional[str] = None
    fraud_status: Optional[str] = None
    va_number: Optional[str] = None
    bank_type: Optional[str] = None
    payment_code: Optional[str] = None
    redirect_url: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    expiry_time: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


def _whole(amount: float):
    """Midtrans rejects fractional IDR amounts."""
    return int(amount) if float(amount).is_integer() else amount


def _midtrans_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S") - MIDTRANS_UTC_OFFSET
    except ValueError:
        logger.warning(f"Unparseable Midtrans timestamp: {value}")
        return None


# Entities Plisio escapes in tx_urls before signing
HTML_ENTITIES = [("&amp;", "&"), ("&lt;", "<"), ("&gt;", ">"), ("&quot;", '"'), ("&#039;", "'")]


def _decode_entities(value: str) -> str:
    for entity, char in HTML_ENTITIES:
        value = value.replace(entity, char)
    return value


def _unix_time(value: Any) -> Optional[datetime]:
    if value in (None, "", 0, "0"):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError):
        logger.warning(f"Unparseable unix timestamp: {value}")
        return None


class MidtransGateway:
    """Card / bank-transfer / e-wallet gateway (Midtrans Core API)."""

    payment_type = PaymentType.MIDTRANS

    def __init__(self, client: httpx.AsyncClient, server_key: str, base_url: str, frontend_url: str):
        self.client = client
        self.server_key = server_key
        self.base_url = base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")

    def build_charge(self, request: ChargeRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "payment_type": request.payment_method,
            "transaction_details": {
                "order_id": request.order_id,
                "gross_amount": _whole(request.gross_amount),
            },
            "customer_details": {
                "first_name": request.customer_name,
                "email": request.customer_email,
            },
            "item_details": [{**line.model_dump(), "price": _whole(line.price)} for line in request.lines],
        }

        if request.payment_method == "credit_card":
            body["credit_card"] = {"secure": True, "authentication": True}
        elif request.payment_method == "bank_transfer":
            body["bank_transfer"] = {"bank": request.bank or "bca"}
        elif request.payment_method == "gopay":
            body["gopay"] = {
                "enable_callback": True,
                "callback_url": f"{self.frontend_url}/payment/callback",
            }
        elif request.payment_method == "echannel":
            body["echannel"] = {
                "bill_info1": "Payment for:",
                "bill_info2": f"Order {request.order_id}",
            }
        elif request.payment_method == "cstore":
            body["cstore"] = {
                "store": request.bank or "indomaret",
                "message": f"Order {request.order_id}",
            }
        return body

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        """Create the transaction; returns its id and initial status."""
        data = await self._request("POST", "/charge", json=self.build_charge(request))
        result = self.parse(data)
        logger.info(
            f"Midtrans charge created for {request.order_id} "
            f"(txn={result.transaction_id}, status={result.native_status})"
        )
        return result

    async def get_status(self, order_id: str, transaction_id: Optional[str] = None) -> GatewayResult:
        """Authoritative status for an order."""
        data = await self._request("GET", f"/{order_id}/status")
        return self.parse(data)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(
                method,
                f"{self.base_url}{path}",
                auth=(self.server_key, ""),
                headers={"Accept": "application/json"},
                **kwargs,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError("midtrans", e.response.text, e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError("midtrans", str(e) or e.__class__.__name__) from e

        # Midtrans reports API errors in the body with HTTP 200
        status_code = str(data.get("status_code", "200"))
        if status_code.isdigit() and int(status_code) >= 400:
            raise GatewayError("midtrans", data.get("status_message", "request rejected"), int(status_code))
        return data

    def parse(self, data: Dict[str, Any]) -> GatewayResult:
        """Normalize a charge, status or notification body."""
        result = GatewayResult(
            order_id=data.get("order_id"),
            transaction_id=data.get("transaction_id"),
            native_status=data.get("transaction_status"),
            fraud_status=data.get("fraud_status"),
            payment_code=data.get("payment_code"),
            actions=data.get("actions"),
            expiry_time=_midtrans_time(data.get("expiry_time")),
            paid_at=_midtrans_time(data.get("settlement_time")),
            raw=data,
        )

        va_numbers = data.get("va_numbers") or []
        if va_numbers:
            result.va_number = va_numbers[0].get("va_number")
            result.bank_type = va_numbers[0].get("bank")
        if data.get("permata_va_number"):
            result.va_number = data["permata_va_number"]
            result.bank_type = "permata"
        if data.get("bill_key"):
            # Mandiri bill payment: customers enter biller code + bill key
            result.va_number = data["bill_key"]
            result.payment_code = data.get("biller_code")
            result.bank_type = "mandiri"
        if data.get("store"):
            result.bank_type = data["store"]

        for action in result.actions or []:
            if action.get("name") in ("generate-qr-code", "deeplink-redirect") and action.get("url"):
                result.redirect_url = action["url"]
                break
        return result

    def signature_for(self, order_id: str, status_code: str, gross_amount: str) -> str:
        payload = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(payload.encode("utf-8")).hexdigest()

    def verify_notification(self, body: Dict[str, Any]) -> bool:
        """Check ``signature_key`` = sha512(order_id + status_code + gross_amount + server_key)."""
        received = body.get("signature_key")
        if not received:
            return False
        expected = self.signature_for(
            str(body.get("order_id", "")),
            str(body.get("status_code", "")),
            str(body.get("gross_amount", "")),
        )
        return hmac.compare_digest(expected, str(received))


class PlisioGateway:
    """Crypto invoice gateway (Plisio)."""

    payment_type = PaymentType.PLISIO

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        secret_key: str,
        base_url: str,
        backend_url: str,
        frontend_url: str,
        default_currency: str = "BTC",
        expire_min: int = 60,
        usd_rate: float = 0.000065,
    ):
        self.client = client
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.backend_url = backend_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.default_currency = default_currency
        self.expire_min = expire_min
        self.usd_rate = usd_rate

    def to_usd(self, amount: float) -> float:
        return round(amount * self.usd_rate, 2)

    def build_invoice(self, request: ChargeRequest) -> Dict[str, Any]:
        products = [line.name for line in request.lines if line.category == "product"]
        return_to = request.return_product_id or ""
        return {
            "api_key": self.api_key,
            "order_name": f"Product Purchase: {', '.join(products)}",
            "order_number": request.order_id,
            "source_currency": "USD",
            "source_amount": self.to_usd(request.gross_amount),
            "currency": request.currency or self.default_currency,
            "callback_url": f"{self.backend_url}/payments/plisio/callback?json=true",
            "success_callback_url": f"{self.backend_url}/payments/plisio/success?json=true",
            "fail_callback_url": f"{self.backend_url}/payments/plisio/fail?json=true",
            "success_invoice_url": f"{self.frontend_url}/payment/{request.order_id}",
            "fail_invoice_url": f"{self.frontend_url}/checkout/{return_to}",
            "email": request.customer_email,
            "description": request.description or f"Purchase for {request.customer_name}",
            "expire_min": self.expire_min,
        }

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        """Create the invoice; the transaction id is Plisio's ``txn_id``."""
        data = await self._request("/invoices/new", self.build_invoice(request))
        result = GatewayResult(
            order_id=request.order_id,
            transaction_id=data.get("txn_id"),
            native_status=data.get("status", "new"),
            redirect_url=data.get("invoice_url") or data.get("hosted_url"),
            expiry_time=_unix_time(data.get("expire_utc")),
            raw=data,
        )
        logger.info(f"Plisio invoice created for {request.order_id} (txn={result.transaction_id})")
        return result

    async def get_status(self, order_id: str, transaction_id: Optional[str] = None) -> GatewayResult:
        """Look up the invoice operation by ``txn_id``."""
        if not transaction_id:
            return GatewayResult(order_id=order_id)

        data = await self._request("/operations", {"api_key": self.api_key, "txn_id": transaction_id})
        operations = data.get("operations", []) if isinstance(data, dict) else data
        if not operations:
            return GatewayResult(order_id=order_id, transaction_id=transaction_id)

        operation = operations[0]
        return GatewayResult(
            order_id=order_id,
            transaction_id=transaction_id,
            native_status=operation.get("status"),
            expiry_time=_unix_time(operation.get("expire_at_utc")),
            paid_at=_unix_time(operation.get("paid_at")),
            raw=operation,
        )

    async def _request(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            response = await self.client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError("plisio", e.response.text, e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError("plisio", str(e) or e.__class__.__name__) from e

        if body.get("status") != "success":
            message = (body.get("data") or {}).get("message") or body.get("message") or "request rejected"
            raise GatewayError("plisio", message)
        return body.get("data") or {}

    def parse_callback(self, body: Dict[str, Any]) -> GatewayResult:
        return GatewayResult(
            order_id=body.get("order_number"),
            transaction_id=body.get("txn_id"),
            native_status=body.get("status"),
            expiry_time=_unix_time(body.get("expire_utc")),
            raw=body,
        )

    def signature_for(self, body: Dict[str, Any]) -> str:
        ordered = {key: body[key] for key in sorted(body) if key != "verify_hash"}
        if "expire_utc" in ordered:
            ordered["expire_utc"] = str(ordered["expire_utc"])
        if isinstance(ordered.get("tx_urls"), str):
            ordered["tx_urls"] = _decode_entities(ordered["tx_urls"])
        message = json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)
        return hmac.new(self.secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).hexdigest()

    def verify_callback(self, body: Dict[str, Any]) -> bool:
        """Check ``verify_hash`` = HMAC-SHA1(secret, JSON of the sorted body minus the hash)."""
        received = body.get("verify_hash")
        if not received or not self.secret_key:
            return False
        return hmac.compare_digest(self.signature_for(body), str(received))
