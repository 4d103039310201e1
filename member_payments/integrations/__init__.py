"""Clients for the payment provider and the transactional email API."""
