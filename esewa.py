"""
eSewa ePay v2 integration.

Outbound: the browser POSTs a signed form to the gateway. The signature is
base64(HMAC-SHA256(secret, "k1=v1,k2=v2,...")) over the fields listed in
signed_field_names, in that order.

Inbound: the gateway redirects back with ?data=<base64 JSON>. The JSON
names its own signed fields; the message is rebuilt from them and the
signature must match exactly before anything else happens.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping

from coupons import money
from errors import SignatureMismatch, ValidationError
from settings import Settings

logger = logging.getLogger(__name__)

REQUEST_SIGNED_FIELDS = ("total_amount", "transaction_uuid", "product_code")

# a callback signature that does not cover these proves nothing about the payment
REQUIRED_CALLBACK_FIELDS = {"transaction_uuid", "status", "total_amount"}

STATUS_COMPLETE = "COMPLETE"


@dataclass
class CallbackPayload:
    transaction_uuid: str
    status: str
    total_amount: str
    product_code: str
    transaction_code: str

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETE


def format_amount(value) -> str:
    """Gateway amounts go out with two decimals, e.g. "1050.00"."""
    return f"{money(value):.2f}"


def signing_message(fields: Mapping, names: List[str]) -> str:
    return ",".join(f"{name}={fields.get(name)}" for name in names)


class EsewaGateway:
    def __init__(self, settings: Settings):
        self.secret = settings.esewa_secret
        self.product_code = settings.esewa_product_code
        self.payment_url = settings.esewa_payment_url
        self.api_url = settings.api_url

    def sign(self, message: str) -> str:
        digest = hmac.new(self.secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def build_form(self, transaction_uuid: str, amount, delivery_charge, total_amount) -> Dict[str, str]:
        form = {
            "amount": format_amount(amount),
            "tax_amount": "0",
            "total_amount": format_amount(total_amount),
            "transaction_uuid": transaction_uuid,
            "product_code": self.product_code,
            "product_service_charge": "0",
            "product_delivery_charge": format_amount(delivery_charge),
            "success_url": f"{self.api_url}/api/esewa/payment-success",
            "failure_url": f"{self.api_url}/api/esewa/payment-failure?transaction_uuid={transaction_uuid}",
            "signed_field_names": ",".join(REQUEST_SIGNED_FIELDS),
        }
        form["signature"] = self.sign(signing_message(form, list(REQUEST_SIGNED_FIELDS)))
        return form

    def decode_callback(self, data: str) -> Dict:
        if not data:
            raise ValidationError("Missing payment response data")
        try:
            padded = data + "=" * (-len(data) % 4)
            decoded = json.loads(base64.b64decode(padded, validate=False).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise ValidationError("Invalid payment response format")
        if not isinstance(decoded, dict):
            raise ValidationError("Invalid payment response format")
        return decoded

    def verify(self, fields: Dict) -> CallbackPayload:
        """Authenticate a decoded callback. Raises SignatureMismatch on any doubt."""
        names_raw = fields.get("signed_field_names")
        signature = fields.get("signature")
        if not names_raw or not signature or not isinstance(names_raw, str) or not isinstance(signature, str):
            raise SignatureMismatch("Payment response is not signed")
        names = [n.strip() for n in names_raw.split(",") if n.strip()]
        if not REQUIRED_CALLBACK_FIELDS.issubset(names):
            raise SignatureMismatch("Payment signature does not cover the transaction")
        expected = self.sign(signing_message(fields, names))
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            logger.warning("Signature mismatch for transaction %s", fields.get("transaction_uuid"))
            raise SignatureMismatch()
        if fields.get("product_code") != self.product_code:
            raise SignatureMismatch("Payment response is for a different merchant")
        return CallbackPayload(
            transaction_uuid=str(fields["transaction_uuid"]),
            status=str(fields["status"]),
            total_amount=str(fields["total_amount"]),
            product_code=str(fields.get("product_code")),
            transaction_code=str(fields.get("transaction_code") or ""),
        )


def amounts_match(reported: str, expected) -> bool:
    try:
        return Decimal(str(reported).replace(",", "")) == Decimal(str(expected))
    except InvalidOperation:
        return False
