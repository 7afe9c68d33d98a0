"""Command-line tools for reading and peeking at AMQP 0-9-1 queues."""

__version__ = "0.1.0"
