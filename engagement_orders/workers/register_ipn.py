"""
Register the Pesapal IPN URL for this deployment.

Run once per deployment; an existing registration for the same URL is
reused. Prints the IPN id to set as PESAPAL_IPN_ID.

    python -m engagement_orders.workers.register_ipn [--url URL] [--method GET|POST] [--list]
"""
import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from engagement_orders.config import get_settings
from engagement_orders.integrations.pesapal_client import GatewayError, PesapalClient
from engagement_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def register_ipn(
    url: Optional[str] = None,
    method: str = "POST",
    client: Optional[PesapalClient] = None,
) -> str:
    """
    Register (or look up) the IPN URL.

    Args:
        url: IPN URL (defaults to the service's public /payment/ipn)
        method: Notification method
        client: Optional Pesapal client

    Returns:
        str: IPN id
    """
    settings = get_settings()
    client = client or PesapalClient(settings)
    ipn_url = url or settings.ipn_url

    if not ipn_url.startswith("https://"):
        logger.warning("ipn_url_not_https", url=ipn_url)

    ipn_id = await client.register_webhook(ipn_url, method)
    logger.info("ipn_registration_completed", url=ipn_url, ipn_id=ipn_id, method=method)
    return ipn_id


async def _main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Register the Pesapal IPN URL")
    parser.add_argument("--url", default=None, help="IPN URL (default: PUBLIC_BASE_URL/payment/ipn)")
    parser.add_argument("--method", default="POST", choices=["GET", "POST"])
    parser.add_argument("--list", action="store_true", help="List registered IPNs and exit")
    args = parser.parse_args(argv)

    setup_logging()
    client = PesapalClient()
    try:
        if args.list:
            for entry in await client.list_webhooks():
                print(f"{entry.get('ipn_id')}\t{entry.get('ipn_notification_type_description', '')}\t{entry.get('url')}")
            return 0

        ipn_id = await register_ipn(args.url, args.method, client)
    except GatewayError as e:
        logger.error("ipn_registration_failed", error=str(e), code=e.code, raw=e.raw)
        return 1

    print(f"PESAPAL_IPN_ID={ipn_id}")
    return 0


def main() -> None:
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
