"""HTTP surface for the endpoint health snapshot."""
