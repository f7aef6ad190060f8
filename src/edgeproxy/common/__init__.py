"""Configuration, logging and HTTP helpers shared by the gateway modules."""
