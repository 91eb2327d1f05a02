"""Models package."""

from .user import User
from .credit_reservation import CreditReservation, ReservationState
from .credit_ledger import CreditLedger
from .photo import ChargeSource, EnhancementMode, Photo, PhotoStatus
from .purchase import Purchase, PurchaseStatus
