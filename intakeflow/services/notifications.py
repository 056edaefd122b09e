"""
Notification service - tells the business owner about new bookings.

The notice carries no patient data: business name, appointment time and the
booking reference the owner can look up. Delivery is best-effort and never
fails the turn that made the booking.
"""
import logging
from typing import Optional

import httpx

from intakeflow.services.booking import Slot
from intakeflow.services.tenants import TenantContext

logger = logging.getLogger(__name__)


async def notify_owner_booking(
    tenant: TenantContext,
    reference: str,
    slot: Slot,
    correlation_id: Optional[str] = None,
) -> bool:
    """POST a booking notice to the owner's notification URL. Returns False when not delivered."""
    if not tenant.notification_url:
        return False

    from intakeflow.config import get_settings
    timeout = get_settings().owner_notification_timeout_seconds
    tz_name = tenant.timezone or "UTC"
    body = {
        "type": "new_booking",
        "business": tenant.display_name or tenant.platform_account_id,
        "platform": tenant.platform,
        "booking_reference": reference,
        "appointment_start": slot.start.isoformat(),
        "appointment_display": f"{slot.to_display(tz_name)} ({tz_name})",
    }
    headers = {"X-Correlation-ID": correlation_id} if correlation_id else {}

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(tenant.notification_url, json=body, headers=headers)
        if response.status_code >= 400:
            logger.error("Owner booking notification rejected: HTTP %d", response.status_code)
            return False
        logger.info("Owner notified of booking %s", reference)
        return True
    except Exception as e:
        logger.error("Failed to send owner booking notification: %s", str(e))
        return False
