"""Broker client, wire format and the message dispatcher."""
