"""SQLModel database entities and domain types.

All table models are imported here to ensure they're registered with SQLModel
metadata before ``create_tables`` runs.
"""

from clipforge.models.generation import CreditStatus, Generation, GenerationStatus
from clipforge.models.profile import PLANS, UNLIMITED_CREDITS, PlanType, Profile
from clipforge.models.video import (
    VIDEO_MODELS,
    GenerationRequest,
    Prediction,
    PredictionStatus,
    VideoModel,
    VideoQuality,
)
from clipforge.models.webhook_delivery import WebhookDelivery

__all__ = [
    "CreditStatus",
    "Generation",
    "GenerationRequest",
    "GenerationStatus",
    "PLANS",
    "PlanType",
    "Prediction",
    "PredictionStatus",
    "Profile",
    "UNLIMITED_CREDITS",
    "VIDEO_MODELS",
    "VideoModel",
    "VideoQuality",
    "WebhookDelivery",
]
