"""
Receipt Generator client

Asks the billing service for a receipt when a payment is recorded or a
consultation completes. Tax and invoice computation happen on that side.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from clinicflow.config import get_settings
from clinicflow.infra.webhooks import WebhookClient

logger = logging.getLogger(__name__)


@dataclass
class ReceiptRequest:
    """Receipt request for one appointment."""

    appointment_id: str
    reason: str  # "payment" or "consultation"
    patient_email: str
    doctor_id: str
    fee: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_channel: Optional[str] = None
    recorded_by: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "appointment_id": self.appointment_id,
            "reason": self.reason,
            "patient_email": self.patient_email,
            "doctor_id": self.doctor_id,
            "fee": str(self.fee) if self.fee is not None else None,
            "payment_method": self.payment_method,
            "payment_channel": self.payment_channel,
            "recorded_by": self.recorded_by,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }


class ReceiptGenerator(WebhookClient):
    """Fire-and-forget receipt requests."""

    name = "billing"

    def __init__(self, url: Optional[str] = None, **kwargs):
        if url is None:
            url = get_settings().billing_webhook_url
        super().__init__(url=url, **kwargs)

    def request_receipt(self, request: ReceiptRequest) -> None:
        """Queue a receipt request.

        Args:
            request: Receipt details
        """
        logger.debug(f"Requesting {request.reason} receipt for {request.appointment_id}")
        self.submit(request.to_dict())


# Singleton instance
_generator: Optional[ReceiptGenerator] = None


def get_receipt_generator() -> ReceiptGenerator:
    """Get singleton receipt generator."""
    global _generator
    if _generator is None:
        _generator = ReceiptGenerator()
    return _generator
