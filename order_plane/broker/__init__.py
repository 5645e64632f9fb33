"""Broker sessions and request throttling."""
