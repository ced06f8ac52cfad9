"""Admin tools callable by the completion model."""
