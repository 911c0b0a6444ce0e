"""Endpoint health checks: probes, dispatcher, dependency graph and snapshot history."""
