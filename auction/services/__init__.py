"""Auction domain services."""
