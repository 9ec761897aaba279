"""Gateway status vocabulary mapped onto payment states."""
from typing import Optional

from .models import PaymentStatus, PaymentType

MIDTRANS_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "settlement": PaymentStatus.SUCCESS,
    "capture": PaymentStatus.SUCCESS,
    "deny": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "cancel": PaymentStatus.CANCELLED,
    "expire": PaymentStatus.EXPIRED,
}

PLISIO_STATUS_MAP = {
    "new": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "pending internal": PaymentStatus.PENDING,
    "completed": PaymentStatus.SUCCESS,
    "mismatch": PaymentStatus.SUCCESS,  # overpaid
    "error": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
}

_MAPS = {
    PaymentType.MIDTRANS: MIDTRANS_STATUS_MAP,
    PaymentType.PLISIO: PLISIO_STATUS_MAP,
}


def map_gateway_status(payment_type: PaymentType, native_status: Optional[str]) -> PaymentStatus:
    """Translate a gateway's native status; unrecognized values stay PENDING."""
    if not native_status:
        return PaymentStatus.PENDING
    return _MAPS[PaymentType(payment_type)].get(native_status.strip().lower(), PaymentStatus.PENDING)
