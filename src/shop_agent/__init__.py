"""Admin chat agent: embedding tool routing with human-approved write actions."""

__version__ = "0.1.0"
