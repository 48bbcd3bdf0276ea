"""Typed configuration models for the Lambda handlers."""
