"""HTTP surface: /v1 router, request schemas, rate-limit and idempotency glue."""
