"""
Transaction outbox.

Components record side effects here while a transaction is open. The engine
hands them to the collaborators only after the commit succeeded, so a
rolled-back operation never notifies anyone.
"""

from dataclasses import dataclass, field

from clinicflow.infra.billing import ReceiptRequest
from clinicflow.infra.notifications import Notification


@dataclass
class Outbox:
    """Side effects collected during one transaction."""

    notifications: list[Notification] = field(default_factory=list)
    receipts: list[ReceiptRequest] = field(default_factory=list)

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def receipt(self, request: ReceiptRequest) -> None:
        self.receipts.append(request)

    def clear(self) -> None:
        self.notifications.clear()
        self.receipts.clear()

    def __bool__(self) -> bool:
        return bool(self.notifications or self.receipts)
