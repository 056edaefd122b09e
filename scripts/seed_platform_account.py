"""
Link a platform account to an owner and give the owner weekly availability.

Idempotent: re-running updates the linkage and replaces availability windows.

Usage:
    python scripts/seed_platform_account.py --account 17841400000000
    python scripts/seed_platform_account.py --platform messenger --account 1029384756 --timezone America/Chicago
"""
import argparse
import asyncio
import logging
import uuid

from sqlalchemy import delete

from intakeflow.database import async_session_factory, dispose_engine
from intakeflow.models.availability import AvailabilityWindow
from intakeflow.services.tenants import link_platform_account

logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(message)s")
logger = logging.getLogger(__name__)

# Monday-Friday, 09:00-17:00
DEFAULT_WEEKDAYS = [0, 1, 2, 3, 4]
DEFAULT_START = "09:00"
DEFAULT_END = "17:00"


async def seed(args) -> None:
    owner_id = uuid.UUID(args.owner) if args.owner else uuid.uuid4()

    async with async_session_factory() as db:
        account = await link_platform_account(
            db,
            owner_id=owner_id,
            platform=args.platform,
            platform_account_id=args.account,
            access_token=args.token,
            display_name=args.name,
            timezone=args.timezone,
            notification_url=args.notify_url,
        )

        await db.execute(delete(AvailabilityWindow).where(AvailabilityWindow.owner_id == owner_id))
        for weekday in DEFAULT_WEEKDAYS:
            db.add(AvailabilityWindow(
                owner_id=owner_id,
                weekday=weekday,
                start_time=DEFAULT_START,
                end_time=DEFAULT_END,
                slot_minutes=args.slot_minutes,
            ))
        await db.commit()

    logger.info(
        "Linked %s account %s to owner %s (tz=%s, %d-minute slots)",
        account.platform, account.platform_account_id, owner_id, args.timezone, args.slot_minutes,
    )
    await dispose_engine()


def main():
    parser = argparse.ArgumentParser(description="Seed a platform account and availability")
    parser.add_argument("--platform", default="instagram", choices=["instagram", "messenger"])
    parser.add_argument("--account", required=True, help="Platform account id of the business")
    parser.add_argument("--owner", default=None, help="Existing owner UUID (new one generated if omitted)")
    parser.add_argument("--token", default=None, help="Page access token used by the send API")
    parser.add_argument("--name", default="Demo Clinic")
    parser.add_argument("--timezone", default="UTC")
    parser.add_argument("--notify-url", default=None, help="Owner endpoint that receives new-booking notices")
    parser.add_argument("--slot-minutes", type=int, default=30)
    args = parser.parse_args()

    asyncio.run(seed(args))


if __name__ == "__main__":
    main()
