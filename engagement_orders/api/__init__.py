"""HTTP API for engagement orders."""
