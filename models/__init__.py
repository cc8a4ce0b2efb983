"""Dataclasses decoded from Gmail API and OAuth responses."""
