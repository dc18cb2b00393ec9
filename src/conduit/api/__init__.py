"""HTTP surface of the bridge (health and runtime configuration)."""
