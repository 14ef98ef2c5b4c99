"""Command-line interface for the credential rotator."""
