"""eSIM Bridge — idempotent webhook fulfillment for eSIMAccess orders."""
