import json
import hmac
import hashlib
import uuid
import httpx
import asyncio
from dotenv import load_dotenv
import os
import logging
import time

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Configuration
BASE_URL = os.getenv("ORDER_LEDGER_URL", "http://localhost:8001")
PORTAL = "signed"
WEBHOOK_URL = f"{BASE_URL}/webhook/payment/{PORTAL}"
HMAC_SECRET = os.getenv("HMAC_SECRET_KEY")

if not HMAC_SECRET:
    logger.error("HMAC_SECRET_KEY not found in environment variables!")
    raise ValueError("HMAC_SECRET_KEY is required but not set")


def generate_hmac(timestamp: int, payload: str, secret: str) -> str:
    """
    Sign a settlement the way a portal does.

    Args:
        timestamp: Unix timestamp
        payload: JSON string payload
        secret: HMAC secret key

    Returns:
        Hexadecimal signature
    """
    signed_payload = f"{timestamp}.{payload}"
    return hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()


def settlement(order_id: str, amount: int, direction: str = "credit") -> dict:
    return {
        "order_id": order_id,
        "amount": amount,
        "direction": direction,
        "reference": f"PAY{uuid.uuid4().hex[:10].upper()}",
    }


async def create_deposit(client: httpx.AsyncClient, amount: int) -> str:
    """Create a deposit order to settle against and return its odrId."""
    order_id = f"DP{uuid.uuid4().hex[:12].upper()}"
    response = await client.post(
        f"{BASE_URL}/orders",
        json={"odrId": order_id, "odrType": "deposit", "amount": amount, "positiveAccount": "ACC_DEMO"},
        timeout=10.0,
    )
    response.raise_for_status()
    logger.info(f"Created deposit {order_id} for {amount}")
    return order_id


async def send_settlement(client: httpx.AsyncClient, payload: dict, signature: str = None) -> httpx.Response:
    payload_str = json.dumps(payload, separators=(",", ":"))
    timestamp = int(time.time())

    headers = {
        "Content-Type": "application/json",
        "X-Timestamp": str(timestamp),
        "X-Signature": signature or generate_hmac(timestamp, payload_str, HMAC_SECRET),
    }
    return await client.post(WEBHOOK_URL, content=payload_str, headers=headers, timeout=10.0)


async def run_test_scenarios():
    """Walk one deposit through partial, final, duplicate and forged settlements."""
    async with httpx.AsyncClient() as client:
        order_id = await create_deposit(client, 100000)

        final = settlement(order_id, 60000)

        test_cases = [
            ("Case 1: Partial settlement", settlement(order_id, 40000), None, 200),
            ("Case 2: Final settlement completes the order", final, None, 200),
            ("Case 3: Redelivered report is skipped as duplicate", final, None, 200),
            ("Case 4: Forged signature", settlement(order_id, 1), "fake_sig", 401),
            ("Case 5: Wrong direction", settlement(order_id, 1, "debit"), None, 400),
        ]

        for name, payload, signature, expected_status in test_cases:
            logger.info(f"=== {name} ===")
            try:
                response = await send_settlement(client, payload, signature)
            except httpx.RequestError as e:
                logger.error(f"Request failed: {str(e)}")
                continue

            outcome = "PASS" if response.status_code == expected_status else "FAIL"
            logger.info(f"{outcome}: expected {expected_status}, got {response.status_code}")
            logger.info(f"Response: {response.json()}")

            await asyncio.sleep(1)


async def main():
    logger.info("Starting settlement mock sender")
    logger.info(f"Target URL: {WEBHOOK_URL}")

    try:
        await run_test_scenarios()
        logger.info("Mock sender completed")
    except KeyboardInterrupt:
        logger.info("Mock sender interrupted")
    except httpx.HTTPError as e:
        logger.error(f"Mock sender failed: {str(e)}")


if __name__ == "__main__":
    asyncio.run(main())
