"""
domain/ - Core recovery and churn logic for the Momentum backend.

Pure Python, no ORM or I/O: the service layer loads rows, calls into these
modules and persists the results.

Modules:
    enums                   - All domain enumerations
    save_flow               - Cart save-flow stage machine, offers, cart risk
    intervention_templates  - Stage copy with {placeholder} substitution
    checkout_signals        - Real-time checkout hesitation detection
    churn_scoring           - Time-decayed customer churn risk scoring
"""

from domain.enums import (
    CartStatus,
    CartSaveStage,
    CartSaveStatus,
    CartAbandonmentReason,
    CartSaveResponseType,
    CartSaveChannel,
    CustomerSignalType,
    RiskLevel,
    DeliveryStatus,
)

__all__ = [
    "CartStatus",
    "CartSaveStage",
    "CartSaveStatus",
    "CartAbandonmentReason",
    "CartSaveResponseType",
    "CartSaveChannel",
    "CustomerSignalType",
    "RiskLevel",
    "DeliveryStatus",
]
