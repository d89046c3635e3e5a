"""Webhook ingestion engine: verification, idempotency, routing and subscription state."""
