#!/usr/bin/env python3
"""
Basic Usage Example - Card Link Engine

This script demonstrates linking a card with the in-memory backend. It shows
how to:
- Initialize the engine
- Subscribe to status and new-method events
- Start a link session and hand off to checkout
- Let the poll loop discover the card once the webhook lands
- Cancel a session and watch a session time out

Run: python examples/basic_usage.py
"""

import asyncio
from dataclasses import replace
from typing import List

from cardlink_app.config.defaults import (
    LoggingParams,
    ReconciliationParams,
    get_default_config,
)
from cardlink_app.engine import CardLinkEngine
from cardlink_app.logging import configure_logging
from cardlink_app.session.models import (
    CheckoutResult,
    LinkSession,
    PaymentMethod,
    describe_status,
)
from cardlink_app.transport.memory_backend import InMemoryLinkBackend


def print_status(session: LinkSession) -> None:
    """Print a session status change."""
    print(f"   [{session.reference}] {session.status.value}: {describe_status(session.status)}")


def print_new_methods(methods: List[PaymentMethod], session: LinkSession) -> None:
    """Print newly linked cards."""
    print(f"💳 NEW CARD LINKED on {session.reference}")
    for method in methods:
        print(f"   {method.brand} ending {method.last4} (exp {method.exp_month}/{method.exp_year})")


async def main():
    """Run the basic usage demonstration."""
    print("🚀 Card Link Engine - Basic Usage Demo")
    print("=" * 60)

    config = replace(
        get_default_config(),
        logging=LoggingParams(level="WARNING"),
        reconciliation=ReconciliationParams(
            poll_interval=0.5,
            verify_interval=2.0,
            timeout_budget=4.0,
        ),
    )
    configure_logging(level=config.logging.level, format_json=config.logging.format_json)
    backend = InMemoryLinkBackend()

    print("1. Initializing the card link engine...")
    engine = CardLinkEngine(backend=backend, config=config)
    engine.on_session_status_changed(print_status)
    engine.on_new_method_detected(print_new_methods)
    print("   Engine initialized successfully!")
    print()

    try:
        print("2. Linking a card (webhook lands after two polls)...")
        session = await engine.initiate_link("acct_demo", contact_email="demo@example.com")
        print(f"   Checkout URL: {session.authorization_url}")

        backend.complete_checkout(
            session.reference,
            PaymentMethod(id="pm_demo", brand="visa", last4="4242", exp_month=12, exp_year=2030),
            persist_after_lists=2,
        )
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        final = await engine.wait_for_outcome(session.reference)
        print(f"   Final status: {final.value}")
        print()

        print("3. Starting and cancelling a session...")
        session = await engine.initiate_link("acct_demo")
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        await asyncio.sleep(0.6)
        engine.cancel_link()
        final = await engine.wait_for_outcome(session.reference)
        print(f"   Final status: {final.value}")
        print()

        print("4. Abandoned checkout (session times out)...")
        session = await engine.initiate_link("acct_demo")
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        final = await engine.wait_for_outcome(session.reference)
        print(f"   Final status: {final.value} ({describe_status(final)})")
        print()
    finally:
        await engine.aclose()

    print("✅ Demo complete")


if __name__ == "__main__":
    asyncio.run(main())
