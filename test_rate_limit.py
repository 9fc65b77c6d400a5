"""
Rate Limiter Check Script

Sends RATE_LIMIT_REQUESTS + 10 sequential requests to a running server.
Expected: the first RATE_LIMIT_REQUESTS succeed, the rest return 429.

Run: CHATRELAY_API_KEY=<key> python test_rate_limit.py
"""
import asyncio
import os
import time

import httpx

from chatrelay.config import settings

# Configuration
BASE_URL = os.environ.get("CHATRELAY_URL", "http://localhost:8000")
API_KEY = os.environ.get("CHATRELAY_API_KEY", "")
LIMIT = settings.RATE_LIMIT_REQUESTS
NUM_REQUESTS = LIMIT + 10


async def send_request(client: httpx.AsyncClient, request_num: int) -> tuple[int | None, str | None]:
    """List sessions once; cheap and always rate limited."""
    start = time.time()
    try:
        response = await client.get("/api/sessions")
    except httpx.HTTPError as e:
        print(f"Request {request_num:3d}: EXCEPTION ({time.time() - start:.3f}s) - {e}")
        return None, None

    duration = time.time() - start
    retry_after = response.headers.get("Retry-After")
    if response.status_code == 200:
        print(f"Request {request_num:3d}: SUCCESS ({duration:.3f}s)")
    elif response.status_code == 429:
        print(f"Request {request_num:3d}: RATE LIMITED ({duration:.3f}s) - Retry-After: {retry_after}")
    else:
        print(f"Request {request_num:3d}: ERROR {response.status_code} - {response.text[:50]}")
    return response.status_code, retry_after


async def main():
    print("=" * 60)
    print(f"Rate Limiter Check - {NUM_REQUESTS} sequential requests")
    print("=" * 60)

    if not API_KEY:
        print("Set CHATRELAY_API_KEY to an account API key first")
        return

    start_time = time.time()
    async with httpx.AsyncClient(base_url=BASE_URL, headers={"X-API-Key": API_KEY}, timeout=10) as client:
        results = [await send_request(client, i + 1) for i in range(NUM_REQUESTS)]
    duration = time.time() - start_time

    successes = sum(1 for status, _ in results if status == 200)
    rate_limited = sum(1 for status, _ in results if status == 429)

    print()
    print("=" * 60)
    print(f"  Successful:    {successes}")
    print(f"  Rate limited:  {rate_limited}")
    print(f"  Total time:    {duration:.2f}s")
    print("=" * 60)

    if successes == LIMIT and rate_limited == NUM_REQUESTS - LIMIT:
        print("PASSED")
    else:
        print(f"Expected {LIMIT} successes and {NUM_REQUESTS - LIMIT} rate limited")


if __name__ == "__main__":
    asyncio.run(main())
