"""Shared helpers: error envelopes, correlation ids, telemetry, tool instrumentation."""
