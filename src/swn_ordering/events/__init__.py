"""Checkout event delivery: bus contract, retry policy, EventBridge producer and dead letters."""
