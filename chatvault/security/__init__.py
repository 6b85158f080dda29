"""At-rest encryption and key management."""
