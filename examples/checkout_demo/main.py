#!/usr/bin/env python3
"""
Checkout Demo - Telemeter Demo Application

Run modes:
  python main.py                              # Offline, against an in-process fake collector
  python main.py --fail-rate 0.5              # Offline, with flaky collector responses
  python main.py --api-key phc_... --host https://eu.i.posthog.com
  python main.py --storage .telemeter         # Keep the queue on disk between runs
"""

import argparse
import asyncio
import json
import logging
import random
import sys

import httpx

from telemeter import Telemeter, TelemetryConfig
from telemeter.transport.http import HttpFlagFetcher, HttpTransport

logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stderr)


class FakeCollector:
    """Answers /batch and /flags like a collector would, with optional failures."""

    def __init__(self, fail_rate: float = 0.0) -> None:
        self.fail_rate = fail_rate
        self.received: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        if request.url.path.startswith("/flags"):
            plan = body.get("person_properties", {}).get("plan")
            variant = "one-page" if plan == "premium" else "classic"
            return httpx.Response(
                200,
                json={
                    "flags": {
                        "checkout-flow": {
                            "key": "checkout-flow",
                            "enabled": True,
                            "variant": variant,
                            "metadata": {"id": 1, "version": 4, "payload": '{"steps": 2}'},
                        },
                    },
                    "requestId": f"req-{random.randint(1000, 9999)}",
                },
            )
        if random.random() < self.fail_rate:
            return httpx.Response(503)
        self.received.extend(body.get("batch", []))
        return httpx.Response(200, json={"status": 1})


async def run_checkout(client: Telemeter, user_id: str, plan: str) -> None:
    """Simulate one user going through checkout."""
    await client.identify(user_id, {"plan": plan}, {"signup_channel": "demo"})
    flow = client.get_feature_flag_variant("checkout-flow", "classic")
    steps = client.get_feature_flag_payload("checkout-flow")["steps"].get_int(3)
    print(f"  {user_id} ({plan}) sees checkout '{flow}' with {steps} steps")

    client.capture("checkout.started", {"flow": flow, "cart_size": random.randint(1, 5)})
    for step in range(1, steps + 1):
        client.screen(f"Checkout step {step}", {"flow": flow})

    try:
        if random.random() < 0.3:
            raise ValueError(f"card declined for {user_id}")
        client.capture("checkout.completed", {"flow": flow})
    except ValueError as e:
        client.capture_exception(e, {"flow": flow})

    await client.reset()


async def main() -> None:
    parser = argparse.ArgumentParser(description="Telemeter checkout demo")
    parser.add_argument("--api-key", default="phc_demo", help="Project API key")
    parser.add_argument("--host", default=None, help="Collector host; omit to use the fake collector")
    parser.add_argument("--storage", default=None, help="Directory for the durable queue")
    parser.add_argument("--users", type=int, default=3, help="Number of simulated users")
    parser.add_argument("--fail-rate", type=float, default=0.0, help="Fake collector failure rate")
    args = parser.parse_args()

    config = TelemetryConfig(
        api_key=args.api_key,
        host=args.host or "https://us.i.posthog.com",
        storage_path=args.storage,
        flush_at=10,
        retry_base_delay_seconds=0.5,
        retry_max_delay_seconds=2.0,
        app_version="1.0.0",
    )

    collector = None
    options = {}
    if args.host is None:
        collector = FakeCollector(args.fail_rate)
        http = httpx.AsyncClient(transport=httpx.MockTransport(collector))
        options["transport"] = HttpTransport(config.batch_url, client=http)
        options["flag_fetcher"] = HttpFlagFetcher(config.flags_url, config.api_key, client=http)

    print("=" * 50)
    print("  Telemeter - Checkout Demo")
    print("=" * 50)

    async with Telemeter(config, **options) as client:
        print(f"\n  Restored {client.queue_size} queued events")
        for i in range(args.users):
            plan = random.choice(["free", "premium"])
            await run_checkout(client, f"user_{i:03d}", plan)
        print(f"\n  {client.queue_size} events waiting for delivery")

    if collector is not None:
        await http.aclose()
        names: dict[str, int] = {}
        for event in collector.received:
            names[event["event"]] = names.get(event["event"], 0) + 1
        print(f"\n  Collector received {len(collector.received)} events:")
        for name, count in sorted(names.items()):
            print(f"    {name:<24} {count}")
    print(f"\n  {client.queue_size} events left in the queue")


if __name__ == "__main__":
    asyncio.run(main())
