"""Core data model: manifest, chunk addressing, exceptions."""
