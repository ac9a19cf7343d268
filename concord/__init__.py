"""Concord: multi-party negotiation orchestration over a rate-limited oracle."""
