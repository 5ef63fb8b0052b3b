"""Core building blocks: errors, configuration and storage drivers."""
