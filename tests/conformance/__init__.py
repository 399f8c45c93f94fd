"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the leverage strategy.
Any compliant engine MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - A failing operation leaves every participant untouched
2. conservation.py - Token balances are conserved outside mint/burn
3. idempotency.py - A second tend without intervening change has nothing to do
4. liquidation_precedence.py - Liquidation risk overrides every gate

These tests use hypothesis for property-based testing.
"""
