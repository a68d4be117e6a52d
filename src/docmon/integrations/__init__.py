"""Client integrations."""
