"""Prefix-routing reverse proxy with admission control and a static asset cache."""

__version__ = "0.1.0"
