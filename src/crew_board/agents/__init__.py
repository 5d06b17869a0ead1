"""Agent roles and assignment routing."""
