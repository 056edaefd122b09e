"""
Database models - import all models here so Alembic can discover them.
"""
from intakeflow.models.platform_account import PlatformAccount
from intakeflow.models.webhook_idempotency import WebhookIdempotency
from intakeflow.models.queue_job import QueueJob
from intakeflow.models.dead_letter import DeadLetterEntry
from intakeflow.models.conversation import ConversationState, ConversationMessage
from intakeflow.models.availability import AvailabilityWindow
from intakeflow.models.appointment import Appointment
from intakeflow.models.audit_log import AuditLog

__all__ = [
    "PlatformAccount",
    "WebhookIdempotency",
    "QueueJob",
    "DeadLetterEntry",
    "ConversationState",
    "ConversationMessage",
    "AvailabilityWindow",
    "Appointment",
    "AuditLog",
]
