"""RabbitMQ messaging layer: host-aware publisher and pooled consumers."""

__version__ = "1.0.0"
