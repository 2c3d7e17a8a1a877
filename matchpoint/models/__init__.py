"""SQLAlchemy models for Matchpoint.

All models are imported here so that ``Base.metadata`` knows every table
before ``create_all`` runs. If you add a new model, import it in this file.
"""

from matchpoint.models.audit import AuditEvent, OutboxEvent
from matchpoint.models.court import Court
from matchpoint.models.ledger import LedgerEntry
from matchpoint.models.maintenance import MaintenanceWindow
from matchpoint.models.promotion import PromoCode
from matchpoint.models.reservation import Reservation
from matchpoint.models.tariff import Tariff, TariffCourt, TariffEnrollment
from matchpoint.models.user import User
from matchpoint.models.wallet import Wallet, WalletMovement

__all__ = [
    "AuditEvent",
    "Court",
    "LedgerEntry",
    "MaintenanceWindow",
    "OutboxEvent",
    "PromoCode",
    "Reservation",
    "Tariff",
    "TariffCourt",
    "TariffEnrollment",
    "User",
    "Wallet",
    "WalletMovement",
]
