"""Currency conversion quotes with idempotent request handling."""
