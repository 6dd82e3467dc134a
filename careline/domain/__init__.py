"""Domain models and error taxonomy shared by every service."""
