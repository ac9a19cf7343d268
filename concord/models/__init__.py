"""Provider client, quota tracking and dispatch for the semantic oracle."""
