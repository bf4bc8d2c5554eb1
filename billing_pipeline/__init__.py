"""Billing intake pipeline: HTTP gateway -> RabbitMQ -> billing worker -> PostgreSQL."""

__version__ = "0.1.0"
