"""Checkout and order domain models."""
