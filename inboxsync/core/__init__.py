"""Core configuration and credential handling."""
