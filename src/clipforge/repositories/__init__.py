"""Repository layer for clipforge.

Provides data access abstractions for all domain entities.
Each repository is self-contained and bound to one session.
"""

from clipforge.repositories.generation import GenerationRepository
from clipforge.repositories.profile import DebitResult, ProfileRepository
from clipforge.repositories.webhook_delivery import WebhookDeliveryRepository

__all__ = [
    "DebitResult",
    "GenerationRepository",
    "ProfileRepository",
    "WebhookDeliveryRepository",
]
