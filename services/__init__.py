"""Answering services for DocSage."""
