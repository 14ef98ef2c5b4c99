"""Credential rotator: watch a credentials file and apply changes to a target service."""
