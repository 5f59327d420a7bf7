import argparse
import asyncio
import json

from dotenv import load_dotenv

from billing_engine.core.app_factory import build_container
from billing_engine.core.config import Settings
from billing_engine.core.logging import configure_logging


async def main(housekeeping: bool) -> None:
    load_dotenv()
    configure_logging()

    container = build_container(Settings())
    try:
        if housekeeping:
            report = await asyncio.to_thread(container.renewal_scheduler.run_housekeeping)
            print(
                "Housekeeping:",
                f"{report.trial_reminders} trial reminders,",
                f"{report.expired_incomplete} expired,",
                f"{report.reconciled} reconciled.",
            )
        summary = await container.renewal_scheduler.run_renewal_batch()
        if summary is None:
            print("A renewal batch is already running.")
            return
        print(json.dumps(summary.as_dict(), indent=2))
    finally:
        container.persistence.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one renewal batch against the configured database.")
    parser.add_argument(
        "--housekeeping",
        action="store_true",
        help="Send trial reminders, expire stale incomplete subscriptions and reconcile the gateway first.",
    )
    args = parser.parse_args()
    asyncio.run(main(args.housekeeping))
